"""Prompt assembly for the planning and execution turns.

The system prompts and the per-iteration observation message are Jinja2
templates under ``templates/``. Snapshot rendering lives in filters so the
templates stay readable.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from pageclick.engine.protocols import InteractiveElement, PageSnapshot

logger = logging.getLogger("pageclick.engine.prompts")

_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

MAX_PROMPT_ELEMENTS = 150

STUCK_WARNING = (
    "WARNING: The last iterations made no visible progress (same page, same form state, "
    "no failures). Try a different approach, or call task_complete / ask_user if the goal "
    "cannot be reached."
)


# -- Filters -----------------------------------------------------------------


def _filter_element_line(el: InteractiveElement) -> str:
    parts = [f"<{el.tag}"]
    if el.input_type:
        parts.append(f' type="{el.input_type}"')
    if el.role:
        parts.append(f' role="{el.role}"')
    parts.append(">")
    line = f"{el.selector}  {''.join(parts)}"
    if el.text:
        line += f" {el.text!r}"
    if el.redacted:
        line += " [value hidden]"
    elif el.value:
        line += f" value={el.value!r}"
    if el.checked is not None:
        line += " [checked]" if el.checked else " [unchecked]"
    if el.options:
        line += f" options={list(el.options)}"
    if el.disabled:
        line += " [disabled]"
    return line


def _filter_flags(snapshot: PageSnapshot) -> str:
    flags = [f"readyState={snapshot.ready_state}"]
    if snapshot.is_loading:
        flags.append("loading")
    if snapshot.has_modal:
        flags.append("modal open")
    return ", ".join(flags)


class PromptBuilder:
    """Renders prompts from the bundled (or a custom) template directory."""

    def __init__(self, templates_dir: Path | None = None) -> None:
        self._env = Environment(
            loader=FileSystemLoader(str(templates_dir or _TEMPLATES_DIR)),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )
        self._env.filters["element_line"] = _filter_element_line
        self._env.filters["page_flags"] = _filter_flags

    def _render(self, name: str, **context: Any) -> str:
        return self._env.get_template(name).render(**context).strip()

    def planning_prompt(self, goal: str, page_url: str = "", page_title: str = "") -> str:
        """System prompt for the clarification turn (ask_user / task_ready)."""
        return self._render("planning.j2", goal=goal, page_url=page_url, page_title=page_title)

    def execution_prompt(self, goal: str, clarification_context: str = "") -> str:
        """System prompt for every execution iteration."""
        return self._render("execution.j2", goal=goal, clarification_context=clarification_context)

    def observation_message(
        self,
        snapshot: PageSnapshot | None,
        loop_count: int,
        max_loops: int,
        history_summary: str = "",
        stuck: bool = False,
        debug_context: str = "",
        page_url: str = "",
    ) -> str:
        """User message describing the page for one iteration.

        ``loop_count`` is zero-based; the rendered iteration number is one-based.
        """
        elements = snapshot.elements[:MAX_PROMPT_ELEMENTS] if snapshot else ()
        return self._render(
            "observation.j2",
            snapshot=snapshot,
            elements=elements,
            omitted_elements=(len(snapshot.elements) - len(elements)) if snapshot else 0,
            iteration=loop_count + 1,
            max_loops=max_loops,
            history_summary=history_summary,
            stuck_warning=STUCK_WARNING if stuck else "",
            debug_context=debug_context,
            page_url=snapshot.url if snapshot else page_url,
        )
