"""Shared fixtures for PageClick unit tests.

The live page is an in-memory fake implementing the LivePage / PageElement
protocols, so no test needs a browser.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from pageclick.engine.action_executor import WaitTimings
from pageclick.engine.protocols import ElementInfo


# ---------------------------------------------------------------------------
# Fake DOM
# ---------------------------------------------------------------------------

class FakeElement:
    """One element of the fake page. Records every primitive call in ``events``."""

    def __init__(
        self,
        tag: str = "div",
        input_type: str | None = None,
        value: str = "",
        text: str = "",
        attributes: dict[str, str] | None = None,
        options: list[tuple[str, str]] | None = None,
        items: list[FakeElement] | None = None,
        content_editable: bool = False,
        in_viewport: bool = True,
        visible: bool = True,
        role: str | None = None,
        accepts_value: bool = True,
    ) -> None:
        self.tag = tag
        self.input_type = input_type
        self.value = value
        self.text_content = text
        self.attributes = dict(attributes or {})
        self._options = list(options or [])
        self.items = list(items or [])
        self.content_editable = content_editable
        self.in_viewport = in_viewport
        self.visible = visible
        self.role = role
        self.accepts_value = accepts_value
        self.checked = False
        self.events: list[str] = []
        self.on_click: Callable[[], None] | None = None

    def describe(self) -> ElementInfo:
        return ElementInfo(
            tag=self.tag,
            input_type=self.input_type,
            content_editable=self.content_editable,
            in_viewport=self.in_viewport,
            role=self.role,
        )

    def scroll_into_view(self) -> None:
        self.events.append("scroll_into_view")
        self.in_viewport = True

    def focus(self) -> None:
        self.events.append("focus")

    def dispatch(self, event_type: str, key: str | None = None) -> None:
        self.events.append(event_type)

    def native_click(self) -> None:
        self.events.append("click")
        if self.input_type in ("checkbox", "radio"):
            self.checked = not self.checked
        if self.on_click is not None:
            self.on_click()

    def get_value(self) -> str:
        return self.value

    def set_value(self, value: str) -> None:
        self.events.append(f"set_value:{value}")
        if self.accepts_value:
            self.value = value

    def append_character(self, char: str) -> None:
        self.value += char
        self.events.append(f"key:{char}")

    def set_text_content(self, text: str) -> None:
        self.text_content = text
        self.events.append("set_text")

    def options(self) -> list[tuple[str, str]]:
        return list(self._options)

    def select_option_value(self, value: str) -> None:
        self.value = value
        self.events.append(f"select:{value}")

    def query_all(self, selector: str) -> list[FakeElement]:
        return list(self.items)

    def text(self) -> str:
        return self.text_content

    def get_attribute(self, name: str) -> str | None:
        return self.attributes.get(name)

    def is_visible(self) -> bool:
        return self.visible


class FakePage:
    """LivePage over a selector -> FakeElement map."""

    def __init__(self, url: str = "https://shop.example.com/cart", elements: dict[str, FakeElement] | None = None):
        self._url = url
        self.elements: dict[str, FakeElement] = dict(elements or {})
        self.mutations = 0
        self.navigations: list[str] = []
        self.scrolls: list[str] = []
        self.evaluated: list[str] = []
        self.eval_result: Any = None
        self.churn = False  # mutate on every read

    @property
    def url(self) -> str:
        return self._url

    @url.setter
    def url(self, value: str) -> None:
        self._url = value

    def query(self, selector: str) -> FakeElement | None:
        return self.elements.get(selector)

    def query_all(self, selector: str) -> list[FakeElement]:
        element = self.elements.get(selector)
        return [element] if element else []

    def scroll_page(self, direction: str, amount: int = 300) -> None:
        self.scrolls.append(direction)

    def mutation_count(self) -> int:
        if self.churn:
            self.mutations += 1
        return self.mutations

    def navigate(self, url: str) -> None:
        self.navigations.append(url)
        self._url = url

    def evaluate_expression(self, expression: str) -> Any:
        self.evaluated.append(expression)
        return self.eval_result


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture
def make_page() -> Callable[..., FakePage]:
    return FakePage


@pytest.fixture
def make_element() -> Callable[..., FakeElement]:
    return FakeElement


@pytest.fixture
def fast_timings() -> WaitTimings:
    """Wait timings short enough for unit tests."""
    return WaitTimings(
        dom_quiet_ms=5,
        dom_initial_quiet_ms=5,
        network_settle_ms=1,
        default_settle_ms=1,
        dom_timeout_ms=50,
        url_change_timeout_ms=30,
        poll_interval_ms=1,
        scroll_settle_ms=1,
        scroll_animation_ms=1,
        typing_delay_ms=0,
    )


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------

@pytest.fixture
def openai_response() -> Callable[..., dict[str, Any]]:
    """Build an OpenAI-style chat completion carrying one tool call."""

    def build(name: str, args: dict[str, Any] | str, content: str = "", call_id: str = "call_1") -> dict[str, Any]:
        arguments = args if isinstance(args, str) else json.dumps(args)
        return {
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": content,
                        "tool_calls": [
                            {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}
                        ],
                    }
                }
            ]
        }

    return build


@pytest.fixture
def gemini_response() -> Callable[..., dict[str, Any]]:
    """Build a Gemini generateContent response carrying one functionCall."""

    def build(name: str, args: dict[str, Any], text: str = "") -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if text:
            parts.append({"text": text})
        parts.append({"functionCall": {"name": name, "args": args}})
        return {"candidates": [{"content": {"role": "model", "parts": parts}}]}

    return build


# ---------------------------------------------------------------------------
# Project directory
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Create a temporary .pageclick/ project directory with a minimal config."""
    project_dir = tmp_path / ".pageclick"
    project_dir.mkdir()
    config_data = {
        "model": "llama-4-scout",
        "headless": True,
        "max_loops": 12,
        "stuck_window": 4,
    }
    (project_dir / "config.yaml").write_text(yaml.dump(config_data, default_flow_style=False), encoding="utf-8")
    return project_dir
