"""PageClick Task Orchestrator -- state machine for one agent task.

Owns the TaskState: phase transitions, the loop budget, the iteration
history and the cancellation token of the running task. Stuck detection and
the history digest are pure reads of that history, recomputed on every
call.

Phases::

    idle -> clarifying -> executing <-> observing -> completed
                              |   \\-> checkpoint -/
                              \\-> error (budget exhausted / fail)

``abort`` returns any phase to ``idle``.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import re
from typing import Any, Callable

from pageclick.engine.cancellation import CancellationToken
from pageclick.engine.protocols import (
    ACTIVE_PHASES,
    ActionPlan,
    CheckpointBlock,
    ExecutionResult,
    LoopEntry,
    TaskCompleteBlock,
    TaskState,
)
from pageclick.models import DEFAULT_LOOP_BUDGET, DEFAULT_LOOP_BUDGETS, HISTORY_WINDOW, STUCK_WINDOW

logger = logging.getLogger("pageclick.engine.orchestrator")

BUDGET_EXHAUSTED_MESSAGE = "Loop budget exhausted"
MAX_EXTRACT_IN_SUMMARY = 200


class InvalidTransitionError(RuntimeError):
    """A transition was requested from a phase that does not allow it."""


class OrchestratorEvent(str, enum.Enum):
    PHASE_CHANGE = "phase_change"
    STEP_RESULT = "step_result"
    LOOP_COMPLETE = "loop_complete"
    ASK_USER = "ask_user"
    CHECKPOINT = "checkpoint"
    TASK_COMPLETE = "task_complete"
    ERROR = "error"
    BUDGET_EXHAUSTED = "budget_exhausted"


Listener = Callable[[OrchestratorEvent, dict[str, Any]], None]


def compute_max_loops(
    goal: str,
    budgets: list[dict[str, Any]] | None = None,
    default: int = DEFAULT_LOOP_BUDGET,
) -> int:
    """Pick a loop budget from the goal text.

    Keyword classes are scanned in order; the first class with a whole-word
    (or whole-phrase) match wins. No match returns *default*.
    """
    text = goal.lower()
    for entry in budgets if budgets is not None else DEFAULT_LOOP_BUDGETS:
        for keyword in entry["keywords"]:
            if re.search(r"\b" + re.escape(keyword.lower()) + r"\b", text):
                return int(entry["budget"])
    return default


class TaskOrchestrator:
    """Runs a single task at a time; not safe to share between concurrent tasks."""

    def __init__(
        self,
        stuck_window: int = STUCK_WINDOW,
        history_window: int = HISTORY_WINDOW,
        loop_budgets: list[dict[str, Any]] | None = None,
        default_loop_budget: int = DEFAULT_LOOP_BUDGET,
        max_loops: int | None = None,
    ) -> None:
        if stuck_window < 1 or history_window < 1:
            raise ValueError("stuck_window and history_window must be at least 1")
        self.stuck_window = stuck_window
        self.history_window = history_window
        self._loop_budgets = loop_budgets
        self._default_loop_budget = default_loop_budget
        self._fixed_max_loops = max_loops
        self._state = TaskState()
        self._epoch = 0
        self._token = CancellationToken(self._epoch)
        self._listeners: list[Listener] = []

    @classmethod
    def from_config(cls, config: Any) -> TaskOrchestrator:
        return cls(
            stuck_window=config.stuck_window,
            history_window=config.history_window,
            loop_budgets=config.loop_budgets,
            default_loop_budget=config.default_loop_budget,
            max_loops=config.max_loops,
        )

    # -- Events --------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: OrchestratorEvent, **payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Listener failed on %s", event.value)

    def _set_phase(self, phase: str) -> None:
        previous = self._state.phase
        if previous == phase:
            return
        self._state.phase = phase
        logger.info("Phase %s -> %s", previous, phase)
        self._emit(OrchestratorEvent.PHASE_CHANGE, previous=previous, phase=phase)

    def _require(self, operation: str, *phases: str) -> None:
        if self._state.phase not in phases:
            raise InvalidTransitionError(f"Cannot {operation} from phase {self._state.phase!r}")

    # -- Read access ---------------------------------------------------------

    @property
    def state(self) -> TaskState:
        """A copy of the current state; mutating it does not affect the task."""
        return dataclasses.replace(
            self._state,
            clarifications=dict(self._state.clarifications),
            history=list(self._state.history),
        )

    @property
    def phase(self) -> str:
        return self._state.phase

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def token(self) -> CancellationToken:
        return self._token

    def is_active(self) -> bool:
        return self._state.phase in ACTIVE_PHASES

    def is_aborted(self) -> bool:
        return self._token.cancelled

    def set_status(self, message: str) -> None:
        self._state.status_message = message

    # -- Transitions ---------------------------------------------------------

    def start_task(self, goal: str) -> None:
        self._require("start a task", "idle", "completed", "error")
        self._token.cancel("Superseded by a new task")
        self._epoch += 1
        self._token = CancellationToken(self._epoch)
        max_loops = self._fixed_max_loops or compute_max_loops(goal, self._loop_budgets, self._default_loop_budget)
        self._state = TaskState(phase=self._state.phase, goal=goal, max_loops=max_loops)
        logger.info("Starting task (budget %d): %s", max_loops, goal)
        self._set_phase("clarifying")

    def add_clarifications(self, answers: dict[str, str]) -> None:
        self._state.clarifications.update({str(k): str(v) for k, v in answers.items()})

    def begin_execution(self) -> None:
        self._require("begin execution", "clarifying")
        self._set_phase("executing")

    def begin_iteration(self) -> None:
        """Enter ``executing`` for the next loop iteration."""
        self._require("begin an iteration", "executing", "observing")
        self._set_phase("executing")

    def set_plan(self, plan: ActionPlan) -> None:
        self._state.pending_plan = plan
        self._state.current_step_index = 0

    def record_step_result(self, result: ExecutionResult) -> None:
        self._state.current_step_index += 1
        if not result.success:
            logger.warning("Step %s %s failed: %s", result.action, result.selector, result.error)
        self._emit(OrchestratorEvent.STEP_RESULT, result=result, index=self._state.current_step_index - 1)

    def complete_loop(self, entry: LoopEntry) -> bool:
        """Record a finished iteration. Returns False once the budget is exhausted."""
        self._require("complete a loop", "executing", "observing")
        self._state.history.append(entry)
        self._state.loop_count += 1
        self._state.pending_plan = None
        self._emit(OrchestratorEvent.LOOP_COMPLETE, entry=entry, loop_count=self._state.loop_count)

        if self._state.loop_count >= self._state.max_loops:
            self._state.status_message = BUDGET_EXHAUSTED_MESSAGE
            logger.warning("Loop budget of %d exhausted", self._state.max_loops)
            self._set_phase("error")
            self._emit(OrchestratorEvent.BUDGET_EXHAUSTED, max_loops=self._state.max_loops)
            return False

        self._set_phase("observing")
        return True

    def ask_user(self, questions: tuple[str, ...]) -> None:
        """Announce questions for the user; the phase does not change."""
        self._emit(OrchestratorEvent.ASK_USER, questions=questions)

    def checkpoint(self, block: CheckpointBlock) -> None:
        self._require("checkpoint", "executing", "observing")
        self._state.status_message = block.message
        self._set_phase("checkpoint")
        self._emit(OrchestratorEvent.CHECKPOINT, block=block)

    def resume_from_checkpoint(self) -> None:
        self._require("resume", "checkpoint")
        self._set_phase("executing")

    def complete(self, block: TaskCompleteBlock) -> None:
        self._require("complete", *ACTIVE_PHASES)
        self._state.status_message = block.summary
        self._state.pending_plan = None
        self._set_phase("completed")
        self._emit(OrchestratorEvent.TASK_COMPLETE, block=block)

    def fail(self, message: str) -> None:
        self._require("fail", *ACTIVE_PHASES)
        self._state.status_message = message
        logger.error("Task failed: %s", message)
        self._set_phase("error")
        self._emit(OrchestratorEvent.ERROR, message=message)

    def abort(self, reason: str = "Task cancelled") -> None:
        """Cancel the running task and return to ``idle``. Safe to call repeatedly."""
        if self._state.phase == "idle" and self._token.cancelled:
            return
        self._token.cancel(reason)
        self._epoch += 1
        self._state.pending_plan = None
        self._state.status_message = reason
        logger.info("Task aborted: %s", reason)
        self._set_phase("idle")

    # -- Derived views -------------------------------------------------------

    def is_stuck(self) -> bool:
        """True when the last ``stuck_window`` iterations show no progress.

        Same URL, same filled-field count, same step indicator and active
        step, and no failed result across the whole window.
        """
        history = self._state.history
        if len(history) < self.stuck_window:
            return False
        window = history[-self.stuck_window:]

        def fingerprint(entry: LoopEntry) -> tuple[Any, ...]:
            flow = entry.flow_state
            if flow is None:
                return (entry.page_url, None, None, None)
            return (entry.page_url, flow.filled_fields, flow.step_indicator, flow.active_step)

        if len({fingerprint(e) for e in window}) != 1:
            return False
        return all(r.success for e in window for r in e.results)

    def build_history_summary(self) -> str:
        history = self._state.history
        if not history:
            return ""
        lines = ["PREVIOUS ACTIONS:"]
        omitted = len(history) - self.history_window
        if omitted > 0:
            lines.append(f"({omitted} earlier iteration{'s' if omitted != 1 else ''} omitted)")
        for entry in history[-self.history_window:]:
            lines.append(f"--- Iteration {entry.iteration} (on {entry.page_url}) ---")
            lines.append(f"Plan: {entry.plan.explanation}")
            for result in entry.results:
                target = f"{result.action} {result.selector}".strip()
                if result.success:
                    line = f"  OK {target}"
                    if result.extracted_data:
                        line += f" -> {result.extracted_data[:MAX_EXTRACT_IN_SUMMARY]}"
                else:
                    line = f"  FAILED {target}: {result.error}"
                lines.append(line)
        return "\n".join(lines)

    def build_clarification_context(self) -> str:
        if not self._state.clarifications:
            return ""
        lines = ["USER PREFERENCES (gathered from clarification):"]
        lines.extend(f"- {q}: {a}" for q, a in self._state.clarifications.items())
        return "\n".join(lines)
