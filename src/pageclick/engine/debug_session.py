"""Debug session service -- per-tab runtime telemetry for the agent.

Keeps bounded ring buffers of network requests, console messages and
uncaught JS errors for each attached tab. Snapshots are newest-first and are
rendered into the execution prompt so the model can see, for example, that a
form submit returned a 422.

The service is an explicit object handed to whoever needs it; attaching a
Playwright page wires its events into the buffers.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from collections import deque
from typing import Any

from pageclick.models import (
    DEBUG_MAX_BODY_CHARS,
    DEBUG_MAX_CONSOLE,
    DEBUG_MAX_ERRORS,
    DEBUG_MAX_NETWORK,
    RESTRICTED_URL_PREFIXES,
)

logger = logging.getLogger("pageclick.engine.debug_session")

MAX_CONSOLE_TEXT = 500
MAX_ERROR_TEXT = 300
# Response bodies are only buffered for JSON under this size
MAX_BUFFERED_RESPONSE_BYTES = 500_000


@dataclasses.dataclass
class NetworkEntry:
    request_id: str
    url: str
    method: str = "GET"
    status: int | None = None
    status_text: str | None = None
    failed: bool = False
    failure_text: str | None = None
    response_body: str | None = None
    timestamp: float = dataclasses.field(default_factory=time.time)


@dataclasses.dataclass(frozen=True)
class ConsoleEntry:
    level: str
    text: str
    timestamp: float = dataclasses.field(default_factory=time.time)


@dataclasses.dataclass(frozen=True)
class DebugSnapshot:
    tab_id: str
    network_log: tuple[NetworkEntry, ...]
    console_log: tuple[ConsoleEntry, ...]
    js_errors: tuple[str, ...]
    captured_at: float

    def is_empty(self) -> bool:
        return not (self.network_log or self.console_log or self.js_errors)

    def render(self, max_items: int = 10) -> str:
        """Compact text block for the execution prompt."""
        if self.is_empty():
            return ""
        lines = ["RUNTIME CONTEXT (newest first):"]
        if self.js_errors:
            lines.append("JS errors:")
            lines.extend(f"  - {e}" for e in self.js_errors[:max_items])
        failing = [n for n in self.network_log if n.failed or (n.status or 0) >= 400]
        if failing:
            lines.append("Failed requests:")
            for n in failing[:max_items]:
                detail = n.failure_text if n.failed else f"{n.status} {n.status_text or ''}".strip()
                body = f" body={n.response_body[:200]}" if n.response_body else ""
                lines.append(f"  - {n.method} {n.url} -> {detail}{body}")
        warnings = [c for c in self.console_log if c.level in ("error", "warning")]
        if warnings:
            lines.append("Console:")
            lines.extend(f"  - [{c.level}] {c.text}" for c in warnings[:max_items])
        return "\n".join(lines) if len(lines) > 1 else ""


class _TabSession:
    def __init__(self, tab_id: str) -> None:
        self.tab_id = tab_id
        self.network_log: deque[NetworkEntry] = deque(maxlen=DEBUG_MAX_NETWORK)
        self.console_log: deque[ConsoleEntry] = deque(maxlen=DEBUG_MAX_CONSOLE)
        self.js_errors: deque[str] = deque(maxlen=DEBUG_MAX_ERRORS)
        self.pending: dict[str, NetworkEntry] = {}
        self.page: Any = None


class DebugSessionManager:
    """Holds one bounded telemetry session per tab id."""

    def __init__(self) -> None:
        self._sessions: dict[str, _TabSession] = {}
        self._lock = threading.Lock()

    # -- Lifecycle -----------------------------------------------------------

    def attach(self, tab_id: str, url: str, page: Any = None) -> tuple[bool, str | None]:
        """Start buffering for *tab_id*. Idempotent.

        Returns ``(ok, error)``; restricted pages are refused. When *page* is
        a Playwright Page its request/console/pageerror events are recorded.
        """
        if url.startswith(RESTRICTED_URL_PREFIXES):
            return False, "Cannot attach to restricted page"
        with self._lock:
            if tab_id in self._sessions:
                return True, None
            session = _TabSession(tab_id)
            self._sessions[tab_id] = session
        if page is not None:
            session.page = page
            self._wire_playwright(tab_id, page)
        logger.debug("Debug session attached to tab %s", tab_id)
        return True, None

    def detach(self, tab_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(tab_id, None)
        if session is not None:
            logger.debug("Debug session detached from tab %s", tab_id)

    def is_attached(self, tab_id: str) -> bool:
        return tab_id in self._sessions

    def _session(self, tab_id: str) -> _TabSession | None:
        return self._sessions.get(tab_id)

    # -- Recording -----------------------------------------------------------

    def record_request(self, tab_id: str, request_id: str, url: str, method: str = "GET") -> None:
        session = self._session(tab_id)
        if session is None:
            return
        with self._lock:
            session.pending[request_id] = NetworkEntry(request_id=request_id, url=url, method=method)

    def record_response(
        self,
        tab_id: str,
        request_id: str,
        status: int,
        status_text: str = "",
        body: str | None = None,
    ) -> None:
        session = self._session(tab_id)
        if session is None:
            return
        with self._lock:
            entry = session.pending.pop(request_id, None)
            if entry is None:
                return
            entry.status = status
            entry.status_text = status_text
            if body is not None:
                entry.response_body = body[:DEBUG_MAX_BODY_CHARS]
            session.network_log.append(entry)

    def record_failure(self, tab_id: str, request_id: str, failure_text: str | None) -> None:
        session = self._session(tab_id)
        if session is None:
            return
        with self._lock:
            entry = session.pending.pop(request_id, None)
            if entry is None:
                return
            entry.failed = True
            entry.failure_text = failure_text or "Unknown failure"
            session.network_log.append(entry)

    def record_console(self, tab_id: str, level: str, text: str) -> None:
        session = self._session(tab_id)
        if session is None:
            return
        with self._lock:
            session.console_log.append(ConsoleEntry(level=level or "log", text=str(text)[:MAX_CONSOLE_TEXT]))

    def record_js_error(self, tab_id: str, text: str) -> None:
        session = self._session(tab_id)
        if session is None:
            return
        with self._lock:
            session.js_errors.append((text or "Unknown JS error")[:MAX_ERROR_TEXT])

    # -- Reading -------------------------------------------------------------

    def snapshot(self, tab_id: str) -> DebugSnapshot | None:
        """Newest-first copy of the buffers, or None when not attached."""
        session = self._session(tab_id)
        if session is None:
            return None
        with self._lock:
            return DebugSnapshot(
                tab_id=tab_id,
                network_log=tuple(dataclasses.replace(n) for n in reversed(session.network_log)),
                console_log=tuple(reversed(session.console_log)),
                js_errors=tuple(reversed(session.js_errors)),
                captured_at=time.time(),
            )

    def eval_js(self, tab_id: str, expression: str) -> dict[str, str]:
        """Evaluate *expression* in the attached page.

        Returns ``{"result": ...}`` truncated to the body limit, or ``{"error": ...}``.
        """
        session = self._session(tab_id)
        if session is None or session.page is None:
            return {"error": "Debugger not attached"}
        try:
            value = session.page.evaluate(expression)
        except Exception as exc:
            return {"error": str(exc) or "Eval threw an exception"}
        if isinstance(value, (dict, list)):
            text = json.dumps(value, default=str)
        else:
            text = "" if value is None else str(value)
        return {"result": text[:DEBUG_MAX_BODY_CHARS]}

    # -- Playwright wiring ---------------------------------------------------

    def _wire_playwright(self, tab_id: str, page: Any) -> None:
        def request_key(request: Any) -> str:
            return str(id(request))

        def on_request(request: Any) -> None:
            self.record_request(tab_id, request_key(request), request.url, request.method)

        def on_response(response: Any) -> None:
            body = None
            content_type = response.headers.get("content-type", "")
            length = int(response.headers.get("content-length") or 0)
            if "json" in content_type and length < MAX_BUFFERED_RESPONSE_BYTES:
                try:
                    body = response.text()
                except Exception:
                    body = "[body not buffered]"
            self.record_response(tab_id, request_key(response.request), response.status, response.status_text, body)

        def on_request_failed(request: Any) -> None:
            self.record_failure(tab_id, request_key(request), request.failure)

        page.on("request", on_request)
        page.on("response", on_response)
        page.on("requestfailed", on_request_failed)
        page.on("console", lambda msg: self.record_console(tab_id, msg.type, msg.text))
        page.on("pageerror", lambda error: self.record_js_error(tab_id, str(error)))
