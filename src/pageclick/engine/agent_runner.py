"""PageClick Agent Runner -- the observe / plan / check / act loop.

Wires the orchestrator, the model client, the response adapter, the safety
policy and the action executor together for one task:

1. Planning turn: the model either asks clarifying questions or declares the
   task ready.
2. Execution loop: snapshot the page, ask the model for exactly one tool
   call, check it against the policy, execute it, record the iteration.
   Runs until the task completes, the budget runs out, the model keeps
   failing, or the task is aborted.

Every suspension point (model call, confirmation callback, wait strategy)
is guarded by the orchestrator's cancellation token and epoch so a late
result from an aborted task never touches the state of the next one.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from typing import Any, Callable

from pageclick.engine.action_executor import ActionExecutor
from pageclick.engine.cancellation import CancellationToken, TaskAborted, run_cancellable
from pageclick.engine.debug_session import DebugSessionManager
from pageclick.engine.model_client import ModelCallError
from pageclick.engine.orchestrator import InvalidTransitionError, TaskOrchestrator
from pageclick.engine.prompts import PromptBuilder
from pageclick.engine.protocols import (
    ActionPlan,
    ActionStep,
    AskUserBlock,
    CheckpointBlock,
    ExecutionResult,
    LoopEntry,
    ModelClient,
    PageSnapshot,
    PolicyVerdict,
    SnapshotProvider,
    TaskCompleteBlock,
    TaskState,
)
from pageclick.engine.safety_policy import AuditEntry, AuditLog, SafetyPolicy
from pageclick.engine.tool_adapter import (
    ParsedToolResult,
    extract_tool_history_messages,
    parse_tool_call_response,
    user_message,
)
from pageclick.engine.tool_schemas import CLARIFICATION_TOOLS, PAGECLICK_TOOLS

logger = logging.getLogger("pageclick.engine.agent_runner")

ConfirmCallback = Callable[[ActionStep, PolicyVerdict], bool]
CheckpointCallback = Callable[[CheckpointBlock], bool]
AskUserCallback = Callable[[tuple[str, ...]], dict[str, str]]

MAX_CLARIFICATION_ROUNDS = 3


class AgentRunner:
    """Drives one task at a time against a live page."""

    def __init__(
        self,
        model: ModelClient,
        executor: ActionExecutor,
        snapshots: SnapshotProvider,
        model_key: str,
        orchestrator: TaskOrchestrator | None = None,
        policy: SafetyPolicy | None = None,
        audit: AuditLog | None = None,
        prompts: PromptBuilder | None = None,
        debug_sessions: DebugSessionManager | None = None,
        tab_id: str = "main",
        confirm: ConfirmCallback | None = None,
        on_checkpoint: CheckpointCallback | None = None,
        ask_user: AskUserCallback | None = None,
        request_timeout: float | None = 60.0,
        max_consecutive_model_failures: int = 3,
    ) -> None:
        """
        Args:
            confirm: Asked for every ``confirm``-tier step. Without it such
                steps are declined.
            on_checkpoint: Asked when the model calls ``checkpoint``. Without
                it the run returns with the task paused in ``checkpoint``.
            ask_user: Answers ``ask_user`` questions as a question -> answer map.
        """
        self._model = model
        self._executor = executor
        self._snapshots = snapshots
        self.model_key = model_key
        self.orchestrator = orchestrator or TaskOrchestrator()
        self._policy = policy or SafetyPolicy()
        self.audit = audit or AuditLog()
        self._prompts = prompts or PromptBuilder()
        self._debug = debug_sessions
        self._tab_id = tab_id
        self._confirm = confirm
        self._on_checkpoint = on_checkpoint
        self._ask_user = ask_user
        self._request_timeout = request_timeout
        self._max_model_failures = max_consecutive_model_failures
        # One group of messages per iteration: observation, tool call, tool result
        self._turns: deque[list[dict[str, Any]]] = deque(maxlen=self.orchestrator.history_window)

    def abort(self, reason: str = "Task cancelled") -> None:
        """Abort the running task. Safe to call from another thread."""
        self.orchestrator.abort(reason)

    # -- Entry point ---------------------------------------------------------

    def run(self, goal: str) -> TaskState:
        """Run *goal* to a terminal (or paused) phase and return the final state."""
        orch = self.orchestrator
        orch.start_task(goal)
        token, epoch = orch.token, orch.epoch
        self._turns.clear()
        try:
            self._clarify(goal, token, epoch)
            self._execute(goal, token, epoch)
        except TaskAborted as exc:
            logger.info("Task stopped: %s", exc.reason)
            if orch.epoch == epoch:
                orch.abort(exc.reason)
        except InvalidTransitionError:
            # abort() from a signal handler can land between a guard and a transition
            if not token.cancelled and orch.epoch == epoch:
                self._fail_if_active(epoch, "Agent loop reached an invalid state")
                raise
            logger.info("Task stopped: %s", token.reason)
        except Exception as exc:
            self._fail_if_active(epoch, f"Unexpected error: {exc}")
            raise
        state = orch.state
        logger.info("Task finished in phase %s after %d iterations", state.phase, state.loop_count)
        return state

    # -- Guards --------------------------------------------------------------

    def _fail_if_active(self, epoch: int, message: str) -> None:
        if self.orchestrator.epoch == epoch and self.orchestrator.is_active():
            self.orchestrator.fail(message)

    def _check_current(self, token: CancellationToken, epoch: int) -> None:
        token.raise_if_cancelled()
        if self.orchestrator.epoch != epoch:
            raise TaskAborted("Task was superseded")

    def _call_model(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        token: CancellationToken,
        epoch: int,
    ) -> tuple[dict[str, Any], ParsedToolResult]:
        try:
            raw = run_cancellable(
                lambda: self._model.complete(system_prompt, messages, tools),
                token,
                timeout=self._request_timeout,
            )
        except (TaskAborted, ModelCallError):
            raise
        except Exception as exc:
            raise ModelCallError(str(exc) or type(exc).__name__) from exc
        self._check_current(token, epoch)
        return raw, parse_tool_call_response(self.model_key, raw)

    def _capture(self) -> PageSnapshot | None:
        try:
            return self._snapshots.capture()
        except Exception as exc:
            logger.warning("Page snapshot failed: %s", exc)
            return None

    def _debug_context(self) -> str:
        if self._debug is None:
            return ""
        snapshot = self._debug.snapshot(self._tab_id)
        return snapshot.render() if snapshot else ""

    # -- Planning turn -------------------------------------------------------

    def _clarify(self, goal: str, token: CancellationToken, epoch: int) -> None:
        orch = self.orchestrator
        snapshot = self._capture()
        system_prompt = self._prompts.planning_prompt(
            goal,
            page_url=snapshot.url if snapshot else self._executor.page.url,
            page_title=snapshot.title if snapshot else "",
        )
        messages = [user_message(self.model_key, f"Task: {goal}")]

        for _ in range(MAX_CLARIFICATION_ROUNDS):
            try:
                _, parsed = self._call_model(system_prompt, messages, CLARIFICATION_TOOLS, token, epoch)
            except ModelCallError as exc:
                logger.warning("Planning turn failed, starting execution anyway: %s", exc)
                break
            if parsed.type != "ask_user" or not isinstance(parsed.block, AskUserBlock):
                if parsed.type == "task_ready":
                    orch.set_status(parsed.summary or "")
                break
            questions = parsed.block.questions
            if not questions or self._ask_user is None:
                break
            orch.ask_user(questions)
            answers = self._ask_user(questions)
            self._check_current(token, epoch)
            orch.add_clarifications(answers)
            messages.append(user_message(self.model_key, "Answers:\n" + _format_answers(answers)))

        orch.begin_execution()

    # -- Execution loop ------------------------------------------------------

    def _execute(self, goal: str, token: CancellationToken, epoch: int) -> None:
        orch = self.orchestrator
        failures = 0

        while orch.phase in ("executing", "observing"):
            self._check_current(token, epoch)
            orch.begin_iteration()
            state = orch.state
            iteration = state.loop_count + 1

            snapshot = self._capture()
            page_url = snapshot.url if snapshot else self._executor.page.url
            flow = snapshot.form_progress if snapshot else None
            observation = user_message(
                self.model_key,
                self._prompts.observation_message(
                    snapshot,
                    state.loop_count,
                    state.max_loops,
                    history_summary=orch.build_history_summary(),
                    stuck=orch.is_stuck(),
                    debug_context=self._debug_context(),
                    page_url=page_url,
                ),
            )
            system_prompt = self._prompts.execution_prompt(goal, orch.build_clarification_context())
            messages = [m for turn in self._turns for m in turn] + [observation]
            logger.info("Iteration %d/%d on %s", iteration, state.max_loops, page_url)

            try:
                raw, parsed = self._call_model(system_prompt, messages, PAGECLICK_TOOLS, token, epoch)
            except ModelCallError as exc:
                failures += 1
                logger.error("Model call failed (%d in a row): %s", failures, exc)
                entry = LoopEntry(
                    iteration=iteration,
                    page_url=page_url,
                    plan=ActionPlan(explanation="Model call failed"),
                    results=(ExecutionResult(False, "model", "", error=str(exc)),),
                    flow_state=flow,
                )
                self._check_current(token, epoch)
                if not orch.complete_loop(entry):
                    return
                if failures >= self._max_model_failures:
                    orch.fail(str(exc))
                    return
                continue
            failures = 0

            if parsed.type == "complete" and isinstance(parsed.block, TaskCompleteBlock):
                orch.complete(parsed.block)
                return

            if parsed.type == "checkpoint" and isinstance(parsed.block, CheckpointBlock):
                orch.checkpoint(parsed.block)
                if self._on_checkpoint is None:
                    logger.info("Paused at checkpoint: %s", parsed.block.reason)
                    return
                approved = bool(self._on_checkpoint(parsed.block))
                self._check_current(token, epoch)
                if not approved:
                    orch.abort("Checkpoint declined")
                    return
                orch.resume_from_checkpoint()
                plan = ActionPlan(explanation=f"Checkpoint: {parsed.block.reason}")
                results = (ExecutionResult(True, "checkpoint", "", extracted_data="User approved"),)

            elif parsed.type == "action" and parsed.plan is not None:
                plan = parsed.plan
                results = self._run_plan(plan, page_url, token, epoch)

            elif parsed.type == "ask_user" and isinstance(parsed.block, AskUserBlock):
                plan = ActionPlan(explanation="Asked the user for input")
                results = (self._answer_questions(parsed.block.questions, token, epoch),)

            else:
                error = parsed.error or f"Unexpected tool during execution: {parsed.type}"
                logger.warning("Unusable model response: %s", error)
                plan = ActionPlan(explanation="Model response could not be used")
                results = (ExecutionResult(False, "parse", "", error=error),)

            last = results[-1] if results else ExecutionResult(True, "none", "")
            self._turns.append([observation, *extract_tool_history_messages(self.model_key, raw, last)])

            entry = LoopEntry(
                iteration=iteration, page_url=page_url, plan=plan, results=tuple(results), flow_state=flow
            )
            self._check_current(token, epoch)
            if not orch.complete_loop(entry):
                return

    def _run_plan(
        self, plan: ActionPlan, page_url: str, token: CancellationToken, epoch: int
    ) -> tuple[ExecutionResult, ...]:
        """Run the plan's steps in order, stopping at the first failure."""
        self.orchestrator.set_plan(plan)
        results: list[ExecutionResult] = []
        for step in plan.actions:
            result = self._run_step(step, page_url, token, epoch)
            self.orchestrator.record_step_result(result)
            results.append(result)
            if not result.success:
                break
        return tuple(results)

    def _run_step(self, step: ActionStep, page_url: str, token: CancellationToken, epoch: int) -> ExecutionResult:
        verdict = self._policy.evaluate(step, page_url)
        logger.info("Policy %s for %s %r: %s", verdict.tier, step.action, step.selector, verdict.reason)

        if verdict.tier == "block":
            self._audit(step, page_url, verdict, approved=False, outcome="blocked")
            return ExecutionResult(False, step.action, step.selector, error=f"Blocked by safety policy: {verdict.reason}")

        if verdict.tier == "confirm":
            approved = bool(self._confirm(step, verdict)) if self._confirm is not None else False
            self._check_current(token, epoch)
            if not approved:
                self._audit(step, page_url, verdict, approved=False, outcome="declined")
                return ExecutionResult(False, step.action, step.selector, error="User declined the action")

        result = self._executor.execute(step, token)
        self._check_current(token, epoch)
        self._audit(
            step,
            page_url,
            verdict,
            approved=verdict.tier == "confirm",
            outcome="success" if result.success else "failed",
        )
        return result

    def _answer_questions(self, questions: tuple[str, ...], token: CancellationToken, epoch: int) -> ExecutionResult:
        self.orchestrator.ask_user(questions)
        if self._ask_user is None:
            return ExecutionResult(False, "ask_user", "", error="No user is available to answer questions")
        answers = self._ask_user(questions)
        self._check_current(token, epoch)
        self.orchestrator.add_clarifications(answers)
        return ExecutionResult(True, "ask_user", "", extracted_data=json.dumps(answers))

    def _audit(self, step: ActionStep, url: str, verdict: PolicyVerdict, approved: bool, outcome: str) -> None:
        self.audit.record(
            AuditEntry(
                action=step.action,
                selector=step.selector,
                url=url,
                verdict=verdict.tier,
                reason=verdict.reason,
                user_approved=approved,
                result=outcome,
            )
        )


def _format_answers(answers: dict[str, str]) -> str:
    return "\n".join(f"- {q}: {a}" for q, a in answers.items()) or "(no answers)"
