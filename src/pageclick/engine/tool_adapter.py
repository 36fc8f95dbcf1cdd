"""Response adapter -- provider tool calls to canonical actions.

Two wire formats are understood:

- OpenAI-compatible: ``choices[0].message.tool_calls[0].function`` with the
  arguments as a JSON string.
- Gemini: ``candidates[0].content.parts`` holding ``functionCall`` parts and
  optional leading ``text`` parts.

The format is chosen from the model key, never guessed from the payload.
Only the first tool call of a response is honoured. Nothing in this module
raises on bad input: every failure becomes ``ParsedToolResult(type="error")``.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import time
from typing import Any, Union

from pageclick.engine.protocols import (
    ActionPlan,
    ActionStep,
    AskUserBlock,
    CheckpointBlock,
    ExecutionResult,
    TaskCompleteBlock,
    RISK_LEVELS,
    WAIT_STRATEGIES,
)
from pageclick.engine.tool_schemas import ACTION_TOOL_NAMES

logger = logging.getLogger("pageclick.engine.tool_adapter")

ALL_TOOL_NAMES = (
    "click, input, select, select_date, scroll, extract, navigate, eval, download, tabgroup, native, "
    "task_complete, checkpoint, ask_user, task_ready"
)


@dataclasses.dataclass(frozen=True)
class ParsedToolResult:
    """One of: action, checkpoint, complete, ask_user, task_ready, error."""

    type: str
    plan: ActionPlan | None = None
    block: CheckpointBlock | TaskCompleteBlock | AskUserBlock | None = None
    summary: str | None = None
    error: str | None = None


# -- Provider responses ----------------------------------------------------


@dataclasses.dataclass(frozen=True)
class OpenAIStyleResponse:
    raw: Any
    provider: str = "openai"


@dataclasses.dataclass(frozen=True)
class GeminiStyleResponse:
    raw: Any
    provider: str = "gemini"


ProviderResponse = Union[OpenAIStyleResponse, GeminiStyleResponse]


def is_gemini_model(model_key: str) -> bool:
    return model_key.startswith("gemini")


def wrap_response(model_key: str, raw: Any) -> ProviderResponse:
    """Tag a raw provider payload with the wire format implied by *model_key*."""
    if is_gemini_model(model_key):
        return GeminiStyleResponse(raw)
    return OpenAIStyleResponse(raw)


def _get(obj: Any, key: str) -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


def _first(seq: Any) -> Any:
    if isinstance(seq, list) and seq:
        return seq[0]
    return None


def _openai_message(raw: Any) -> dict[str, Any] | None:
    message = _get(_first(_get(raw, "choices")), "message")
    return message if isinstance(message, dict) else None


def _gemini_parts(raw: Any) -> list[dict[str, Any]] | None:
    parts = _get(_get(_first(_get(raw, "candidates")), "content"), "parts")
    if not isinstance(parts, list) or not parts:
        return None
    return [p for p in parts if isinstance(p, dict)]


# -- Argument coercion -----------------------------------------------------


def _is_positive_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and value > 0
    )


def args_to_action_step(tool_name: str, args: dict[str, Any]) -> ActionStep:
    """Coerce raw tool arguments into an ActionStep with lenient defaults."""
    confidence = args.get("confidence")
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) and not math.isnan(confidence):
        confidence = max(0.0, min(1.0, float(confidence)))
    else:
        confidence = 0.8

    clear_first = args.get("clear_first", args.get("clearFirst"))
    timeout_ms = args.get("timeoutMs", args.get("timeout_ms"))
    wait_for = args.get("waitFor", args.get("wait_for"))
    risk = args.get("risk")

    return ActionStep(
        action=tool_name,
        selector=args["selector"] if isinstance(args.get("selector"), str) else "",
        value=args["value"] if isinstance(args.get("value"), str) else None,
        clear_first=clear_first if isinstance(clear_first, bool) else None,
        wait_for=wait_for if wait_for in WAIT_STRATEGIES else None,
        timeout_ms=int(timeout_ms) if _is_positive_number(timeout_ms) else None,
        confidence=confidence,
        risk=risk if risk in RISK_LEVELS else "low",
        description=args["description"] if isinstance(args.get("description"), str) else None,
    )


def _string_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(v) for v in value if v is not None)


def dispatch_tool(name: str, args: dict[str, Any], explanation: str = "") -> ParsedToolResult:
    """Route one tool invocation to the matching result type."""
    if name in ACTION_TOOL_NAMES:
        step = args_to_action_step(name, args)
        plan = ActionPlan(explanation=explanation or step.description or f"Executing {name}", actions=(step,))
        return ParsedToolResult("action", plan=plan)

    if name == "task_complete":
        return ParsedToolResult(
            "complete",
            block=TaskCompleteBlock(
                summary=args.get("summary") or "Task completed.",
                next_steps=_string_list(args.get("nextSteps", args.get("next_steps"))),
            ),
        )
    if name == "checkpoint":
        can_skip = args.get("canSkip", args.get("can_skip"))
        return ParsedToolResult(
            "checkpoint",
            block=CheckpointBlock(
                reason=args.get("reason") or "Sensitive action ahead",
                message=args.get("message") or "I'm about to perform a sensitive action. Do you want to continue?",
                can_skip=can_skip if isinstance(can_skip, bool) else False,
            ),
        )
    if name == "ask_user":
        return ParsedToolResult("ask_user", block=AskUserBlock(questions=_string_list(args.get("questions"))))
    if name == "task_ready":
        return ParsedToolResult("task_ready", summary=args.get("summary") or "Ready to proceed.")

    return ParsedToolResult("error", error=f'Unknown tool name: "{name}". Expected one of: {ALL_TOOL_NAMES}.')


# -- Parsing ---------------------------------------------------------------


def parse_openai_tool_call(raw: Any) -> ParsedToolResult:
    message = _openai_message(raw)
    if message is None:
        return ParsedToolResult("error", error="No message in response")

    content = message.get("content") if isinstance(message.get("content"), str) else ""
    tool_call = _first(message.get("tool_calls"))
    if not isinstance(tool_call, dict):
        logger.warning("No tool_calls in response. Content: %.200s", content)
        return ParsedToolResult("error", error="Model did not return a tool call. Content: " + content[:100])

    function = tool_call.get("function") if isinstance(tool_call.get("function"), dict) else {}
    name = function.get("name") or ""
    arguments = function.get("arguments") or "{}"
    if isinstance(arguments, dict):
        args = arguments
    else:
        try:
            args = json.loads(arguments)
        except (TypeError, ValueError):
            args = None
    if not isinstance(args, dict):
        return ParsedToolResult("error", error=f'Failed to parse tool arguments for "{name}"')

    return dispatch_tool(name, args, content)


def parse_gemini_tool_call(raw: Any) -> ParsedToolResult:
    parts = _gemini_parts(raw)
    if not parts:
        return ParsedToolResult("error", error="No content parts in Gemini response")

    fn_part = next((p for p in parts if isinstance(p.get("functionCall"), dict)), None)
    if fn_part is None:
        text = next((p["text"] for p in parts if isinstance(p.get("text"), str)), "")
        logger.warning("No functionCall in Gemini response. Text: %.200s", text)
        return ParsedToolResult("error", error="Gemini did not return a function call.")

    name = fn_part["functionCall"].get("name") or ""
    args = fn_part["functionCall"].get("args") or {}
    if not isinstance(args, dict):
        return ParsedToolResult("error", error=f'Failed to parse tool arguments for "{name}"')
    explanation = next((p["text"] for p in parts if isinstance(p.get("text"), str) and "functionCall" not in p), "")
    return dispatch_tool(name, args, explanation)


def parse_response(response: ProviderResponse) -> ParsedToolResult:
    if isinstance(response, GeminiStyleResponse):
        return parse_gemini_tool_call(response.raw)
    if isinstance(response, OpenAIStyleResponse):
        return parse_openai_tool_call(response.raw)
    return ParsedToolResult("error", error=f"Unsupported response type: {type(response).__name__}")


def parse_tool_call_response(model_key: str, raw: Any) -> ParsedToolResult:
    """Parse a raw provider payload for *model_key*. Never raises."""
    try:
        return parse_response(wrap_response(model_key, raw))
    except Exception as exc:
        logger.exception("Unexpected error while parsing model response")
        return ParsedToolResult("error", error=f"Could not parse model response: {exc}")


# -- Re-serialization ------------------------------------------------------


def step_to_args(step: ActionStep) -> dict[str, Any]:
    """Tool arguments that reproduce *step* when parsed again."""
    args: dict[str, Any] = {"selector": step.selector}
    if step.value is not None:
        args["value"] = step.value
    if step.clear_first is not None:
        args["clear_first"] = step.clear_first
    args["confidence"] = step.confidence
    args["risk"] = step.risk
    if step.description is not None:
        args["description"] = step.description
    if step.wait_for is not None:
        args["waitFor"] = step.wait_for
    if step.timeout_ms is not None:
        args["timeoutMs"] = step.timeout_ms
    return args


def to_openai_tool_call(step: ActionStep, call_id: str | None = None) -> dict[str, Any]:
    return {
        "id": call_id or f"call_{int(time.time() * 1000)}",
        "type": "function",
        "function": {"name": step.action, "arguments": json.dumps(step_to_args(step))},
    }


def to_gemini_function_call(step: ActionStep) -> dict[str, Any]:
    return {"functionCall": {"name": step.action, "args": step_to_args(step)}}


# -- Conversation history --------------------------------------------------


def user_message(model_key: str, text: str) -> dict[str, Any]:
    if is_gemini_model(model_key):
        return {"role": "user", "parts": [{"text": text}]}
    return {"role": "user", "content": text}


def result_payload(result: ExecutionResult, observation: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": result.success}
    if result.extracted_data:
        payload["data"] = result.extracted_data
    if result.error:
        payload["error"] = result.error
    if observation:
        payload["observation"] = observation
    return payload


def extract_tool_history_messages(
    model_key: str,
    raw: Any,
    result: ExecutionResult,
    observation: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """Build the [assistant tool call, tool result] pair for the next turn.

    Returns an empty list when *raw* holds no tool call.
    """
    payload = result_payload(result, observation)
    if is_gemini_model(model_key):
        return _gemini_tool_history(raw, payload)
    return _openai_tool_history(raw, payload)


def _openai_tool_history(raw: Any, payload: dict[str, Any]) -> list[dict[str, Any]]:
    message = _openai_message(raw)
    tool_call = _first(_get(message, "tool_calls"))
    if not isinstance(tool_call, dict) or not isinstance(tool_call.get("function"), dict):
        return []

    call_id = tool_call.get("id") or f"call_{int(time.time() * 1000)}"
    arguments = tool_call["function"].get("arguments") or "{}"
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    return [
        {
            "role": "assistant",
            "content": message.get("content") or None,
            "tool_calls": [
                {
                    "id": call_id,
                    "type": "function",
                    "function": {"name": tool_call["function"].get("name") or "", "arguments": arguments},
                }
            ],
        },
        {"role": "tool", "tool_call_id": call_id, "content": json.dumps(payload)},
    ]


def _gemini_tool_history(raw: Any, payload: dict[str, Any]) -> list[dict[str, Any]]:
    parts = _gemini_parts(raw)
    if not parts:
        return []

    model_parts: list[dict[str, Any]] = []
    name = ""
    for part in parts:
        if isinstance(part.get("text"), str):
            model_parts.append({"text": part["text"]})
        if isinstance(part.get("functionCall"), dict):
            name = part["functionCall"].get("name") or ""
            model_parts.append({"functionCall": {"name": name, "args": part["functionCall"].get("args") or {}}})
            break
    else:
        return []

    return [
        {"role": "model", "parts": model_parts},
        {"role": "function", "parts": [{"functionResponse": {"name": name, "response": payload}}]},
    ]
