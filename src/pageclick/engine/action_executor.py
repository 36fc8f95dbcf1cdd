"""PageClick Action Executor -- runs one ActionStep against the live page.

Maps the canonical actions (click, input, select, scroll, extract) onto
primitive element operations, routes the privileged actions (navigate,
select_date, eval, download, tabgroup, native) to their handlers, and then
applies the step's wait strategy so the next observation does not read a
half-rendered DOM.

``execute`` never raises: every failure, including cancellation, comes back
as an ``ExecutionResult`` with ``success=False``.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import TYPE_CHECKING

from pageclick.engine.cancellation import CancellationToken, TaskAborted
from pageclick.engine.protocols import ACTION_NAMES, ActionStep, ExecutionResult, LivePage, PageElement
from pageclick.models import (
    DEFAULT_SETTLE_MS,
    DEFAULT_WAIT_TIMEOUT_MS,
    DOM_INITIAL_QUIET_MS,
    DOM_QUIET_MS,
    NETWORK_SETTLE_MS,
    POLL_INTERVAL_MS,
    RESTRICTED_URL_PREFIXES,
    SCROLL_ANIMATION_MS,
    SCROLL_SETTLE_MS,
    TYPING_DELAY_MS,
    URL_CHANGE_TIMEOUT_MS,
)

if TYPE_CHECKING:
    from pageclick.engine.privileged import PrivilegedActionRouter

logger = logging.getLogger("pageclick.engine.action_executor")

PRIVILEGED_ACTIONS = frozenset({"navigate", "select_date", "eval", "download", "tabgroup", "native"})

# Candidate items inside a non-native dropdown
CUSTOM_OPTION_SELECTOR = '[role="option"], [role="menuitem"], li, [data-value]'

SCROLL_DIRECTIONS = ("up", "down", "top", "bottom")


class ActionError(Exception):
    """An action failed in a way the model should hear about."""


def is_restricted_url(url: str) -> bool:
    return url.startswith(RESTRICTED_URL_PREFIXES)


@dataclasses.dataclass(frozen=True)
class WaitTimings:
    """Timings (ms) used by the wait strategies and typing simulation."""

    dom_quiet_ms: int = DOM_QUIET_MS
    dom_initial_quiet_ms: int = DOM_INITIAL_QUIET_MS
    network_settle_ms: int = NETWORK_SETTLE_MS
    default_settle_ms: int = DEFAULT_SETTLE_MS
    dom_timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS
    url_change_timeout_ms: int = URL_CHANGE_TIMEOUT_MS
    poll_interval_ms: int = POLL_INTERVAL_MS
    scroll_settle_ms: int = SCROLL_SETTLE_MS
    scroll_animation_ms: int = SCROLL_ANIMATION_MS
    typing_delay_ms: int = TYPING_DELAY_MS


class ActionExecutor:
    """Executes ActionSteps against a LivePage, one at a time."""

    def __init__(
        self,
        page: LivePage,
        router: PrivilegedActionRouter | None = None,
        timings: WaitTimings | None = None,
    ) -> None:
        if router is None:
            from pageclick.engine.privileged import PrivilegedActionRouter

            router = PrivilegedActionRouter.with_defaults()
        self._page = page
        self._router = router
        self._timings = timings or WaitTimings()

    @property
    def page(self) -> LivePage:
        return self._page

    def execute(self, step: ActionStep, token: CancellationToken | None = None) -> ExecutionResult:
        """Execute *step* and wait for the page to settle.

        Returns ExecutionResult. Never raises -- errors are captured in the result.
        """
        token = token or CancellationToken()
        start = time.monotonic()

        def _result(success: bool, error: str | None = None, data: str | None = None) -> ExecutionResult:
            return ExecutionResult(
                success=success,
                action=step.action,
                selector=step.selector,
                extracted_data=data,
                error=error,
                duration_ms=round((time.monotonic() - start) * 1000, 1),
            )

        logger.info("Executing %s on %r", step.action, step.selector)

        # Shape checks happen before the page is touched
        if step.action not in ACTION_NAMES:
            return _result(False, f"Unknown action: {step.action}")
        if step.action == "input" and not step.value:
            return _result(False, "Input action requires a value")
        if step.action == "select" and not step.value:
            return _result(False, "Select action requires a value")

        try:
            url_before = self._page.url
            if step.action != "navigate" and is_restricted_url(url_before):
                return _result(False, f"Cannot run {step.action} on a restricted page ({url_before})")

            if step.action in PRIVILEGED_ACTIONS:
                data = self._router.handle(step, self._page, token)
            else:
                data = self._execute_on_element(step, token)

            if step.action not in ("extract", "eval", "download", "tabgroup", "native"):
                self._apply_wait_strategy(step, url_before, token)

        except TaskAborted as exc:
            logger.info("Action %s aborted: %s", step.action, exc.reason)
            return _result(False, f"Aborted: {exc.reason}")
        except ActionError as exc:
            logger.warning("Action %s on %r failed: %s", step.action, step.selector, exc)
            return _result(False, str(exc))
        except Exception as exc:
            logger.warning("Action %s on %r raised %s", step.action, step.selector, exc)
            return _result(False, f"{type(exc).__name__}: {exc}")

        result = _result(True, data=data)
        logger.debug("Action %s succeeded in %.0fms", step.action, result.duration_ms)
        return result

    # -- Element actions -----------------------------------------------------

    def _execute_on_element(self, step: ActionStep, token: CancellationToken) -> str | None:
        element = self._page.query(step.selector)
        if element is None:
            raise ActionError(f"Element not found: {step.selector}")

        if step.action == "click":
            self._do_click(element, token)
        elif step.action == "input":
            self._do_input(element, step.value or "", step.clear_first is not False, token)
        elif step.action == "select":
            self._do_select(element, step.value or "", token)
        elif step.action == "scroll":
            self._do_scroll(element, step.value or "down", token)
        elif step.action == "extract":
            return self._do_extract(element)
        return None

    def _scroll_into_view_if_needed(self, element: PageElement, token: CancellationToken) -> None:
        if not element.describe().in_viewport:
            element.scroll_into_view()
            token.sleep(self._timings.scroll_settle_ms / 1000)

    def _do_click(self, element: PageElement, token: CancellationToken) -> None:
        self._scroll_into_view_if_needed(element, token)
        info = element.describe()

        # Native toggles: let the browser flip the state, then announce it
        if info.tag == "input" and info.input_type in ("checkbox", "radio"):
            element.focus()
            element.native_click()
            element.dispatch("change")
            return

        element.focus()
        for event_type in ("pointerdown", "mousedown", "pointerup", "mouseup"):
            element.dispatch(event_type)
        element.native_click()

    def _do_input(self, element: PageElement, value: str, clear_first: bool, token: CancellationToken) -> None:
        self._scroll_into_view_if_needed(element, token)
        info = element.describe()
        element.focus()

        if info.tag not in ("input", "textarea") and info.content_editable:
            element.set_text_content(value if clear_first else element.text() + value)
            element.dispatch("input")
            return
        if info.tag not in ("input", "textarea"):
            raise ActionError(f"Element is not editable: <{info.tag}>")

        if clear_first:
            element.set_value("")
            element.dispatch("input")
        # One character at a time so per-keystroke listeners fire
        for char in value:
            element.append_character(char)
            token.sleep(self._timings.typing_delay_ms / 1000)
        element.dispatch("change")

    def _do_select(self, element: PageElement, value: str, token: CancellationToken) -> None:
        self._scroll_into_view_if_needed(element, token)
        info = element.describe()
        wanted = value.strip().lower()

        if info.tag == "select":
            options = element.options()
            match = next(
                (opt for opt in options if opt[0].lower() == wanted or opt[1].strip().lower() == wanted),
                None,
            )
            if match is None:
                match = next(
                    (opt for opt in options if wanted in opt[1].strip().lower() or wanted in opt[0].lower()),
                    None,
                )
            if match is None:
                raise ActionError(f"Option not found: {value}")
            element.select_option_value(match[0])
            element.dispatch("change")
            element.dispatch("input")
            logger.debug("Selected option %r for %r", match[1], value)
            return

        # Custom dropdown: open it if none of its items are showing yet
        candidates = [item for item in element.query_all(CUSTOM_OPTION_SELECTOR) if item.is_visible()]
        if not candidates:
            element.native_click()
            token.sleep(self._timings.scroll_settle_ms / 1000)
            candidates = [item for item in element.query_all(CUSTOM_OPTION_SELECTOR) if item.is_visible()]
        for item in candidates:
            if wanted in item.text().strip().lower():
                item.native_click()
                return
        raise ActionError(f"Option not found: {value}")

    def _do_scroll(self, element: PageElement, direction: str, token: CancellationToken) -> None:
        info = element.describe()
        if info.tag in ("body", "html"):
            if direction not in SCROLL_DIRECTIONS:
                raise ActionError(f"Invalid scroll direction: {direction}")
            self._page.scroll_page(direction)
        else:
            element.scroll_into_view()
        token.sleep(self._timings.scroll_animation_ms / 1000)

    def _do_extract(self, element: PageElement) -> str:
        info = element.describe()
        if info.tag in ("input", "textarea"):
            return element.get_value()
        if info.tag == "select":
            current = element.get_value()
            for option_value, option_text in element.options():
                if option_value == current:
                    return option_text.strip()
            return current
        if info.tag == "img":
            return element.get_attribute("alt") or element.get_attribute("src") or ""
        if info.tag == "a":
            return f"{element.text().strip()} ({element.get_attribute('href') or ''})"
        return element.text().strip()

    # -- Wait Strategies -----------------------------------------------------

    def _apply_wait_strategy(self, step: ActionStep, url_before: str, token: CancellationToken) -> None:
        t = self._timings
        if step.wait_for == "domStable":
            self.wait_for_dom_stable(step.timeout_ms or t.dom_timeout_ms, token)
        elif step.wait_for == "networkIdle":
            self.wait_for_dom_stable(step.timeout_ms or t.dom_timeout_ms, token)
            token.sleep(t.network_settle_ms / 1000)
        elif step.wait_for == "urlChange":
            timeout_ms = step.timeout_ms or t.url_change_timeout_ms
            if not self.wait_for_url_change(url_before, timeout_ms, token):
                raise ActionError(f"Timed out after {timeout_ms}ms waiting for URL change")
        else:
            token.sleep(t.default_settle_ms / 1000)

    def wait_for_dom_stable(self, timeout_ms: int, token: CancellationToken) -> bool:
        """Block until the DOM has been quiet for the quiet window.

        Returns False when the hard timeout was hit first; callers treat that
        as settled enough and carry on.
        """
        t = self._timings
        start = time.monotonic()
        last_count = self._page.mutation_count()
        last_change = start
        mutated = False
        while True:
            token.sleep(t.poll_interval_ms / 1000)
            now = time.monotonic()
            count = self._page.mutation_count()
            if count != last_count:
                last_count = count
                last_change = now
                mutated = True
            quiet_ms = t.dom_quiet_ms if mutated else t.dom_initial_quiet_ms
            if (now - last_change) * 1000 >= quiet_ms:
                return True
            if (now - start) * 1000 >= timeout_ms:
                logger.warning("DOM still changing after %dms, continuing", timeout_ms)
                return False

    def wait_for_url_change(self, url_before: str, timeout_ms: int, token: CancellationToken) -> bool:
        start = time.monotonic()
        while True:
            if self._page.url != url_before:
                return True
            if (time.monotonic() - start) * 1000 >= timeout_ms:
                return False
            token.sleep(self._timings.poll_interval_ms / 1000)
