"""Tool declarations offered to the model.

Declarations are kept in the OpenAI function-calling format and converted to
the alternate provider's ``functionDeclarations`` on demand.
"""

from __future__ import annotations

import copy
from typing import Any

# -- Shared parameter sub-schemas ------------------------------------------

_SELECTOR = {
    "type": "string",
    "description": (
        "CSS selector targeting the element to act on. Prefer #id, [aria-label=...], "
        "or [data-testid=...]. Use 'body' for page-level scroll."
    ),
}
_UNUSED_SELECTOR = {"type": "string", "description": "Leave empty string '' (selector is not used)."}
_CONFIDENCE = {"type": "number", "description": "Confidence score from 0.0 to 1.0 that this action will succeed."}
_RISK = {
    "type": "string",
    "enum": ["low", "medium", "high"],
    "description": "Risk level: low = safe read/navigate, medium = form submit, high = destructive or payment.",
}
_DESCRIPTION = {"type": "string", "description": "Human-readable description of what this action does."}
_WAIT_FOR = {
    "type": "string",
    "enum": ["domStable", "networkIdle", "urlChange"],
    "description": (
        "Wait strategy after the action: domStable (300ms without mutations), "
        "networkIdle (DOM stable + 200ms), urlChange (poll until the URL changes)."
    ),
}


def _tool(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "strict": True,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
                "additionalProperties": False,
            },
        },
    }


def _action_tool(
    name: str,
    description: str,
    value: dict[str, Any] | None = None,
    selector: dict[str, Any] = _SELECTOR,
    wait: bool = False,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    properties: dict[str, Any] = {"selector": selector}
    if value is not None:
        properties["value"] = value
    properties.update(extra or {})
    properties.update({"confidence": _CONFIDENCE, "risk": _RISK, "description": _DESCRIPTION})
    if wait:
        properties["waitFor"] = _WAIT_FOR
    return _tool(name, description, properties, list(properties))


# -- Action tools ----------------------------------------------------------

ACTION_TOOLS: list[dict[str, Any]] = [
    _action_tool(
        "click",
        "Click an element on the page. Dispatches pointer and mouse events then a click. Works on buttons, "
        "links, checkboxes, radios and custom ARIA elements. Prefer this over eval for simple clicks.",
        wait=True,
    ),
    _action_tool(
        "input",
        "Type text into an input, textarea or contentEditable element, one character at a time. "
        "Clears the existing value first unless clear_first is false.",
        value={"type": "string", "description": "The text to type into the element."},
        extra={
            "clear_first": {
                "type": "boolean",
                "description": "If true (default), clear the existing value before typing.",
            }
        },
        wait=True,
    ),
    _action_tool(
        "select",
        "Select an option from a native <select> or a custom ARIA listbox. Matches option text or value "
        "case-insensitively; partial matches are allowed.",
        value={"type": "string", "description": "The option text or value to select."},
    ),
    _action_tool(
        "select_date",
        "Set a date on a date input or date-like control. Use ISO format YYYY-MM-DD.",
        value={"type": "string", "description": "Date value in ISO format YYYY-MM-DD."},
        wait=True,
    ),
    _action_tool(
        "scroll",
        "Scroll the page or scroll a specific element into view. Use selector='body' for the whole page.",
        value={
            "type": "string",
            "enum": ["up", "down", "top", "bottom"],
            "description": "Scroll direction. Ignored when the selector targets a specific element.",
        },
    ),
    _action_tool(
        "extract",
        "Read the text or value of an element without modifying it.",
    ),
    _action_tool(
        "navigate",
        "Navigate the tab to a new URL. Works from any page, including restricted browser pages.",
        value={"type": "string", "description": "Full URL to open. https:// is added if missing."},
        selector=_UNUSED_SELECTOR,
    ),
    _action_tool(
        "eval",
        "Evaluate a JavaScript expression in the page and return the result as extracted data. "
        "Use sparingly; prefer extract for simple reads.",
        value={"type": "string", "description": "JavaScript expression returning a serializable value."},
        selector=_UNUSED_SELECTOR,
    ),
    _action_tool(
        "download",
        "Download a file to the user's downloads folder. Target a link or image element, or leave the "
        "selector empty and pass a direct URL as value.",
        value={"type": "string", "description": "Direct download URL. Overrides the selector's URL."},
        selector={"type": "string", "description": "CSS selector of an <a href> or <img src> element, or ''."},
    ),
    _action_tool(
        "tabgroup",
        "Organize open tabs into named groups. Operations: create, add, list.",
        value={
            "type": "string",
            "description": (
                'JSON operation object, e.g. {"op":"create","name":"Research","urls":["*github.com*"]} | '
                '{"op":"add","name":"Research","urls":["*docs.python.org*"]} | {"op":"list"}'
            ),
        },
        selector=_UNUSED_SELECTOR,
    ),
    _action_tool(
        "native",
        "Call a local native operation through the companion host. Allowed ops: clipboard.read, "
        "clipboard.write, fs.readText. Never use for passwords, API keys or payment data.",
        value={
            "type": "string",
            "description": (
                'JSON payload with op and args, e.g. {"op":"clipboard.read","args":{}} | '
                '{"op":"fs.readText","args":{"path":"~/Documents/notes.txt"}}'
            ),
        },
        selector=_UNUSED_SELECTOR,
    ),
]

# -- Control tools ---------------------------------------------------------

TASK_COMPLETE_TOOL = _tool(
    "task_complete",
    "Signal that the task is complete, or that it cannot be completed. Do not call any other tool in the same turn.",
    {
        "summary": {"type": "string", "description": "What was accomplished, or why the task could not be completed."},
        "nextSteps": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Suggested follow-up actions for the user.",
        },
    },
    ["summary", "nextSteps"],
)

CHECKPOINT_TOOL = _tool(
    "checkpoint",
    "Pause and ask the user to confirm before a sensitive or irreversible action such as placing an order, "
    "paying, or deleting data.",
    {
        "reason": {"type": "string", "description": "Short technical reason, e.g. 'About to place order'."},
        "message": {"type": "string", "description": "Message shown to the user asking for approval."},
        "canSkip": {"type": "boolean", "description": "Whether the user may skip this checkpoint."},
    },
    ["reason", "message", "canSkip"],
)

ASK_USER_TOOL = _tool(
    "ask_user",
    "Ask the user clarifying questions when the task cannot proceed without their input. Maximum 3 questions.",
    {
        "questions": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Specific questions, each answerable in one sentence.",
        }
    },
    ["questions"],
)

TASK_READY_TOOL = _tool(
    "task_ready",
    "Signal that there is enough information to start. Give a one or two sentence plan.",
    {"summary": {"type": "string", "description": "Brief plan of the actions to take."}},
    ["summary"],
)

# All tools offered during execution
PAGECLICK_TOOLS: list[dict[str, Any]] = [*ACTION_TOOLS, TASK_COMPLETE_TOOL, CHECKPOINT_TOOL, ASK_USER_TOOL]

# Tools offered during the planning turn
CLARIFICATION_TOOLS: list[dict[str, Any]] = [ASK_USER_TOOL, TASK_READY_TOOL]

ACTION_TOOL_NAMES: frozenset[str] = frozenset(t["function"]["name"] for t in ACTION_TOOLS)
CONTROL_TOOL_NAMES: frozenset[str] = frozenset({"task_complete", "checkpoint", "ask_user", "task_ready"})


# -- Alternate provider conversion -----------------------------------------

_GEMINI_STRIP_KEYS = {"strict", "additionalProperties"}


def _convert_schema(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return schema
    result: dict[str, Any] = {}
    for key, value in schema.items():
        if key in _GEMINI_STRIP_KEYS:
            continue
        if key == "type" and isinstance(value, str):
            result[key] = value.upper()
        elif key == "properties" and isinstance(value, dict):
            result[key] = {name: _convert_schema(prop) for name, prop in value.items()}
        elif key == "items":
            result[key] = _convert_schema(value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def to_gemini_tools(tools: list[dict[str, Any]]) -> dict[str, Any]:
    """Convert OpenAI-format tools to ``{"functionDeclarations": [...]}``.

    The alternate provider wants upper-case type names and rejects the
    ``strict``/``additionalProperties`` keys.
    """
    return {
        "functionDeclarations": [
            {
                "name": tool["function"]["name"],
                "description": tool["function"]["description"],
                "parameters": _convert_schema(tool["function"]["parameters"]),
            }
            for tool in tools
        ]
    }
