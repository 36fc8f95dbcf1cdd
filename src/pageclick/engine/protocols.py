"""Agent loop data model and collaborator protocols.

The dataclasses here are the records passed between the response adapter,
the safety policy, the action executor and the orchestrator. The protocols
describe the collaborators the loop depends on but does not own: the live
page, the page-snapshot source, the model client and the audit sink.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any, Literal, Protocol, runtime_checkable

ActionName = Literal[
    "click",
    "input",
    "select",
    "select_date",
    "scroll",
    "extract",
    "navigate",
    "eval",
    "download",
    "tabgroup",
    "native",
]
Risk = Literal["low", "medium", "high"]
WaitFor = Literal["domStable", "networkIdle", "urlChange"]
Tier = Literal["auto", "confirm", "block"]
Phase = Literal["idle", "clarifying", "executing", "observing", "checkpoint", "completed", "error"]

ACTION_NAMES: tuple[str, ...] = (
    "click",
    "input",
    "select",
    "select_date",
    "scroll",
    "extract",
    "navigate",
    "eval",
    "download",
    "tabgroup",
    "native",
)
RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high")
WAIT_STRATEGIES: tuple[str, ...] = ("domStable", "networkIdle", "urlChange")
ACTIVE_PHASES: frozenset[str] = frozenset({"clarifying", "executing", "observing", "checkpoint"})


@dataclasses.dataclass(frozen=True)
class ActionStep:
    """One canonical page action proposed by the model."""

    action: str  # one of ACTION_NAMES
    selector: str
    value: str | None = None
    clear_first: bool | None = None
    wait_for: str | None = None  # one of WAIT_STRATEGIES
    timeout_ms: int | None = None
    confidence: float = 0.8
    risk: str = "low"
    description: str | None = None


@dataclasses.dataclass(frozen=True)
class ActionPlan:
    """An explanation plus the steps to run. The loop produces one step per plan."""

    explanation: str
    actions: tuple[ActionStep, ...] = ()


@dataclasses.dataclass(frozen=True)
class PolicyVerdict:
    tier: str  # auto | confirm | block
    reason: str
    original_risk: str
    escalated_risk: str | None = None


@dataclasses.dataclass(frozen=True)
class ExecutionResult:
    """Outcome of executing a single ActionStep."""

    success: bool
    action: str
    selector: str
    extracted_data: str | None = None
    error: str | None = None
    duration_ms: float = 0.0


@dataclasses.dataclass(frozen=True)
class FormProgress:
    """Multi-step form progress observed on the page."""

    step_indicator: str | None = None  # e.g. "Step 2 of 4"
    active_step: str | None = None
    progress_percent: float | None = None
    total_fields: int = 0
    filled_fields: int = 0
    unfilled_fields: tuple[str, ...] = ()  # labels of empty fields, at most 10


@dataclasses.dataclass(frozen=True)
class LoopEntry:
    iteration: int
    page_url: str
    plan: ActionPlan
    results: tuple[ExecutionResult, ...]
    timestamp: float = dataclasses.field(default_factory=time.time)
    flow_state: FormProgress | None = None


@dataclasses.dataclass(frozen=True)
class CheckpointBlock:
    reason: str
    message: str
    can_skip: bool = False


@dataclasses.dataclass(frozen=True)
class TaskCompleteBlock:
    summary: str
    next_steps: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class AskUserBlock:
    questions: tuple[str, ...] = ()


@dataclasses.dataclass
class TaskState:
    """Mutable task state, owned by the TaskOrchestrator."""

    phase: str = "idle"
    goal: str = ""
    clarifications: dict[str, str] = dataclasses.field(default_factory=dict)
    loop_count: int = 0
    max_loops: int = 25
    history: list[LoopEntry] = dataclasses.field(default_factory=list)
    current_step_index: int = 0
    pending_plan: ActionPlan | None = None
    status_message: str = ""


@dataclasses.dataclass(frozen=True)
class InteractiveElement:
    """Summary of one actionable element in a page snapshot."""

    selector: str
    tag: str
    text: str = ""
    role: str | None = None
    input_type: str | None = None
    value: str | None = None  # never set for sensitive fields
    disabled: bool = False
    checked: bool | None = None
    options: tuple[str, ...] = ()
    redacted: bool = False


@dataclasses.dataclass(frozen=True)
class PageSnapshot:
    url: str
    title: str
    elements: tuple[InteractiveElement, ...] = ()
    text_excerpt: str = ""
    description: str = ""
    ready_state: str = "complete"
    is_loading: bool = False
    has_modal: bool = False
    form_progress: FormProgress | None = None


@dataclasses.dataclass(frozen=True)
class ElementInfo:
    """Static facts about an element that drive action dispatch."""

    tag: str  # lower-case tag name
    input_type: str | None = None
    content_editable: bool = False
    in_viewport: bool = True
    role: str | None = None


# -- Live page -------------------------------------------------------------


@runtime_checkable
class PageElement(Protocol):
    """Handle to one element on the live page."""

    def describe(self) -> ElementInfo: ...

    def scroll_into_view(self) -> None: ...

    def focus(self) -> None: ...

    def dispatch(self, event_type: str, key: str | None = None) -> None: ...

    def native_click(self) -> None: ...

    def get_value(self) -> str: ...

    def set_value(self, value: str) -> None: ...

    def append_character(self, char: str) -> None:
        """Append one character to the value and fire keydown/input/keyup."""
        ...

    def set_text_content(self, text: str) -> None: ...

    def options(self) -> list[tuple[str, str]]:
        """Native <select> options as (value, text) pairs."""
        ...

    def select_option_value(self, value: str) -> None: ...

    def query_all(self, selector: str) -> list[PageElement]: ...

    def text(self) -> str: ...

    def get_attribute(self, name: str) -> str | None: ...

    def is_visible(self) -> bool: ...


@runtime_checkable
class LivePage(Protocol):
    """The live page the executor acts on."""

    @property
    def url(self) -> str: ...

    def query(self, selector: str) -> PageElement | None:
        """Resolve a selector. Returns None when nothing matches or the selector is invalid."""
        ...

    def query_all(self, selector: str) -> list[PageElement]: ...

    def scroll_page(self, direction: str, amount: int = 300) -> None: ...

    def mutation_count(self) -> int:
        """Monotonic counter of DOM mutations observed since the page loaded."""
        ...

    def navigate(self, url: str) -> None: ...

    def evaluate_expression(self, expression: str) -> Any: ...


# -- Collaborators ---------------------------------------------------------


@runtime_checkable
class SnapshotProvider(Protocol):
    def capture(self) -> PageSnapshot | None: ...


@runtime_checkable
class ModelClient(Protocol):
    """Sends a system prompt plus conversation to a model and returns the raw response."""

    def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        **kwargs: Any,
    ) -> dict[str, Any]: ...


@runtime_checkable
class AuditSink(Protocol):
    def append(self, entry: dict[str, Any]) -> None: ...
