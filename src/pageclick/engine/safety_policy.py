"""Safety policy -- permission tiers for proposed page actions.

Every ActionStep is checked against ordered rule tables before it may run:

1. URL blocklist (skipped for ``navigate``)
2. Selector / description blocklist
3. Confirm list
4. Risk escalation table
5. Default tier from the step's declared risk

The first matching rule decides the verdict. The tables are plain data
(``PolicyRules``) so they can be extended from config and tested on their own.
Evaluation holds no state and is safe to call from several threads.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Iterable, Sequence

from pageclick.engine.protocols import ActionStep, AuditSink, PolicyVerdict
from pageclick.models import MAX_AUDIT_ENTRIES

logger = logging.getLogger("pageclick.engine.safety_policy")

_RISK_ORDER = {"low": 0, "medium": 1, "high": 2}


def risk_rank(risk: str) -> int:
    return _RISK_ORDER.get(risk, 0)


# -- Rule tables -----------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class EscalationRule:
    """(action, pattern) -> risk.

    The pattern is tested against ``"<selector> <description> <value>"``.
    Normally the resulting risk is the higher of the declared and rule risk;
    with ``force`` the rule risk replaces the declared one outright.
    """

    action: str
    pattern: re.Pattern[str]
    escalate_to: str
    reason: str
    force: bool = False


@dataclasses.dataclass(frozen=True)
class PolicyRules:
    blocked_urls: tuple[re.Pattern[str], ...]
    blocked_selectors: tuple[re.Pattern[str], ...]
    confirm_selectors: tuple[re.Pattern[str], ...]
    escalations: tuple[EscalationRule, ...]

    def extended(self, extra: dict[str, Any] | None) -> PolicyRules:
        """Return a copy with config-supplied rules appended after the built-ins.

        *extra* has the shape of the ``policy`` config section::

            blocked_urls: ["intranet\\.corp"]
            blocked_selectors: ["\\[data-ssn\\]"]
            confirm_selectors: ["button.*archive"]
            escalations:
              - {action: click, pattern: "transfer", escalate_to: high, reason: "Money transfer"}
        """
        if not extra:
            return self
        escalations = list(self.escalations)
        for raw in extra.get("escalations") or []:
            escalate_to = str(raw.get("escalate_to", "medium"))
            if escalate_to not in _RISK_ORDER:
                raise ValueError(f"Unknown risk level in escalation rule: {escalate_to}")
            escalations.append(
                EscalationRule(
                    action=str(raw["action"]),
                    pattern=re.compile(str(raw["pattern"]), re.IGNORECASE),
                    escalate_to=escalate_to,
                    reason=str(raw.get("reason") or f"Matches custom rule {raw['pattern']}"),
                    force=bool(raw.get("force", False)),
                )
            )
        return PolicyRules(
            blocked_urls=self.blocked_urls + _compile_all(extra.get("blocked_urls")),
            blocked_selectors=self.blocked_selectors + _compile_all(extra.get("blocked_selectors")),
            confirm_selectors=self.confirm_selectors + _compile_all(extra.get("confirm_selectors")),
            escalations=tuple(escalations),
        )


def _compile_all(patterns: Iterable[str] | None) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(str(p), re.IGNORECASE) for p in (patterns or []))


_I = re.IGNORECASE

DEFAULT_RULES = PolicyRules(
    blocked_urls=(
        re.compile(r"chrome://"),
        re.compile(r"chrome-extension://"),
        re.compile(r"about:"),
        re.compile(r"^javascript:", _I),
        re.compile(r"banking", _I),
        re.compile(r"paypal\.com", _I),
        re.compile(r"stripe\.com/.*dashboard", _I),
    ),
    blocked_selectors=(
        # Payment / checkout
        re.compile(r"input\[.*type=[\"']?password", _I),
        re.compile(r"input\[.*autocomplete=[\"']?cc-", _I),
        re.compile(r"\[data-.*payment\]", _I),
        re.compile(r"\[data-.*billing\]", _I),
        re.compile(r"\.stripe", _I),
        re.compile(r"#card-element", _I),
        # Authentication
        re.compile(r"\[data-.*otp\]", _I),
        re.compile(r"\[data-.*mfa\]", _I),
        re.compile(r"\[data-.*2fa\]", _I),
        # Account destruction
        re.compile(r"\[data-.*delete.*account\]", _I),
        re.compile(r"\[data-.*deactivate\]", _I),
    ),
    confirm_selectors=(
        re.compile(r"button.*delete", _I),
        re.compile(r"button.*remove", _I),
        re.compile(r"button.*cancel", _I),
        re.compile(r"\[data-.*submit\]", _I),
        re.compile(r"form.*submit", _I),
        re.compile(r"input\[type=[\"']?submit", _I),
        re.compile(r"a\[href.*logout\]", _I),
        re.compile(r"a\[href.*signout\]", _I),
        re.compile(r"button.*logout", _I),
        re.compile(r"button.*sign.?out", _I),
    ),
    escalations=(
        EscalationRule("click", re.compile(r"delete|remove|cancel|unsubscribe", _I), "high", "Destructive action detected"),
        EscalationRule(
            "input", re.compile(r"password|email|login|signin", _I), "medium", "Entering data into authentication field"
        ),
        EscalationRule("navigate", re.compile(r".*"), "low", "Navigation is handled by the privileged channel", force=True),
        EscalationRule("click", re.compile(r"purchase|buy|order|checkout|pay", _I), "high", "Purchase/payment action detected"),
    ),
)


# -- Evaluation ------------------------------------------------------------


def _tier_for(risk: str) -> str:
    return "confirm" if risk in ("high", "medium") else "auto"


class SafetyPolicy:
    """Evaluates ActionSteps against an ordered set of rule tables."""

    def __init__(self, rules: PolicyRules = DEFAULT_RULES) -> None:
        self.rules = rules

    @classmethod
    def from_config(cls, policy_section: dict[str, Any] | None) -> SafetyPolicy:
        return cls(DEFAULT_RULES.extended(policy_section))

    def evaluate(self, step: ActionStep, page_url: str | None = None) -> PolicyVerdict:
        original = step.risk if step.risk in _RISK_ORDER else "low"

        # 1. URL blocklist; navigation leaves the blocked context so it is exempt
        if page_url and step.action != "navigate":
            for pattern in self.rules.blocked_urls:
                if pattern.search(page_url):
                    return PolicyVerdict("block", f"Actions blocked on this page ({pattern.pattern})", original)

        # 2. Selector / description blocklist
        for pattern in self.rules.blocked_selectors:
            if pattern.search(step.selector):
                return PolicyVerdict("block", f"Blocked selector: {step.selector} matches security rule", original)
            if step.description and pattern.search(step.description):
                return PolicyVerdict("block", "Action description matches blocked pattern", original)

        # 3. Confirm list
        for pattern in self.rules.confirm_selectors:
            if pattern.search(step.selector) or (step.description and pattern.search(step.description)):
                escalated = original if risk_rank(original) >= risk_rank("medium") else "medium"
                return PolicyVerdict(
                    "confirm",
                    f'Potentially destructive: matches "{pattern.pattern}"',
                    original,
                    escalated if escalated != original else None,
                )

        # 4. Risk escalation
        target = f"{step.selector} {step.description or ''} {step.value or ''}"
        for rule in self.rules.escalations:
            if step.action != rule.action or not rule.pattern.search(target):
                continue
            if rule.force:
                risk = rule.escalate_to
            else:
                risk = rule.escalate_to if risk_rank(rule.escalate_to) > risk_rank(original) else original
            return PolicyVerdict(_tier_for(risk), rule.reason, original, risk if risk != original else None)

        # 5. Declared risk
        if original == "high":
            return PolicyVerdict("confirm", "High risk action", original)
        if original == "medium":
            return PolicyVerdict("confirm", "Medium risk, requires approval", original)
        return PolicyVerdict("auto", "Low risk, auto-approved", original)

    def evaluate_plan(self, steps: Sequence[ActionStep], page_url: str | None = None) -> PlanVerdict:
        results = tuple((step, self.evaluate(step, page_url)) for step in steps)
        return PlanVerdict(
            can_auto_run=all(v.tier == "auto" for _, v in results),
            steps=results,
            blocked=tuple(s for s, v in results if v.tier == "block"),
            requires_confirmation=tuple(s for s, v in results if v.tier == "confirm"),
        )


@dataclasses.dataclass(frozen=True)
class PlanVerdict:
    can_auto_run: bool
    steps: tuple[tuple[ActionStep, PolicyVerdict], ...]
    blocked: tuple[ActionStep, ...]
    requires_confirmation: tuple[ActionStep, ...]


_default_policy = SafetyPolicy()


def evaluate_step(step: ActionStep, page_url: str | None = None) -> PolicyVerdict:
    """Evaluate *step* against the built-in rules."""
    return _default_policy.evaluate(step, page_url)


def evaluate_plan(steps: Sequence[ActionStep], page_url: str | None = None) -> PlanVerdict:
    return _default_policy.evaluate_plan(steps, page_url)


# -- Audit trail -----------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AuditEntry:
    action: str
    selector: str
    url: str
    verdict: str
    reason: str
    user_approved: bool
    result: str | None = None  # success | failed | blocked | declined
    timestamp: float = dataclasses.field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        fields = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in fields})


class AuditLog:
    """Bounded, newest-first audit trail with an optional persistence sink.

    A failing sink never fails the task: the error is logged and dropped.
    """

    def __init__(self, sink: AuditSink | None = None, max_entries: int = MAX_AUDIT_ENTRIES) -> None:
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._sink = sink
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.appendleft(entry)
        if self._sink is None:
            return
        try:
            self._sink.append(entry.to_dict())
        except Exception as exc:
            logger.warning("Failed to persist audit entry: %s", exc)

    def entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class JsonlAuditSink:
    """Append-only JSON-lines audit file trimmed to the newest *max_entries*."""

    def __init__(self, path: Path, max_entries: int = MAX_AUDIT_ENTRIES) -> None:
        self.path = path
        self.max_entries = max_entries

    def append(self, entry: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lines: list[str] = []
        if self.path.exists():
            lines = self.path.read_text(encoding="utf-8").splitlines()
        lines.append(json.dumps(entry, sort_keys=True))
        if len(lines) > self.max_entries:
            lines = lines[-self.max_entries :]
        self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def read(self) -> list[AuditEntry]:
        """Return persisted entries, newest first. Corrupt lines are skipped."""
        if not self.path.exists():
            return []
        entries: list[AuditEntry] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.from_dict(json.loads(line)))
            except (ValueError, TypeError):
                logger.debug("Skipping corrupt audit line: %.80s", line)
        entries.reverse()
        return entries
