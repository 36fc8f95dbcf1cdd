"""Unit tests for pageclick.engine.action_executor -- DOM actions and wait strategies on a fake page."""

from __future__ import annotations

import pytest

from pageclick.engine.action_executor import ActionExecutor, is_restricted_url
from pageclick.engine.cancellation import CancellationToken
from pageclick.engine.protocols import ActionStep

from conftest import FakeElement, FakePage


@pytest.fixture
def executor_for(fast_timings):
    def build(page: FakePage) -> ActionExecutor:
        return ActionExecutor(page, timings=fast_timings)

    return build


def _page(**elements: FakeElement) -> FakePage:
    return FakePage(elements={f"#{name}": el for name, el in elements.items()})


# ---------------------------------------------------------------------------
# 1. Validation before touching the page
# ---------------------------------------------------------------------------

class TestValidation:
    """Shape checks fail fast and leave the DOM untouched."""

    def test_input_without_value(self, executor_for):
        field = FakeElement("input", "text")
        result = executor_for(_page(email=field)).execute(ActionStep(action="input", selector="#email"))
        assert result.success is False
        assert result.error == "Input action requires a value"
        assert field.events == []

    def test_select_without_value(self, executor_for):
        result = executor_for(_page()).execute(ActionStep(action="select", selector="#plan", value=""))
        assert result.error == "Select action requires a value"

    def test_unknown_action(self, executor_for):
        result = executor_for(_page()).execute(ActionStep(action="hover", selector="#a"))
        assert result.success is False
        assert result.error == "Unknown action: hover"

    def test_element_not_found(self, executor_for):
        result = executor_for(_page()).execute(ActionStep(action="click", selector="#missing"))
        assert result.error == "Element not found: #missing"
        assert result.action == "click"
        assert result.selector == "#missing"

    @pytest.mark.parametrize("url", ["chrome://settings", "about:blank", "chrome-extension://abc/popup.html"])
    def test_restricted_pages_only_allow_navigate(self, executor_for, url: str):
        page = _page(go=FakeElement("button"))
        page.url = url
        executor = executor_for(page)

        click = executor.execute(ActionStep(action="click", selector="#go"))
        assert click.success is False
        assert click.error == f"Cannot run click on a restricted page ({url})"
        assert page.elements["#go"].events == []

        nav = executor.execute(ActionStep(action="navigate", selector="", value="example.com"))
        assert nav.success is True
        assert page.navigations == ["https://example.com"]

    def test_is_restricted_url(self):
        assert is_restricted_url("edge://flags")
        assert not is_restricted_url("https://chrome.example.com")


# ---------------------------------------------------------------------------
# 2. Click
# ---------------------------------------------------------------------------

class TestClick:
    """Clicks dispatch the full pointer sequence."""

    def test_event_order(self, executor_for):
        button = FakeElement("button", text="Next")
        result = executor_for(_page(next=button)).execute(ActionStep(action="click", selector="#next"))
        assert result.success is True
        assert button.events == ["focus", "pointerdown", "mousedown", "pointerup", "mouseup", "click"]
        assert result.duration_ms >= 0

    def test_scrolls_into_view_first(self, executor_for):
        button = FakeElement("button", in_viewport=False)
        executor_for(_page(b=button)).execute(ActionStep(action="click", selector="#b"))
        assert button.events[0] == "scroll_into_view"

    @pytest.mark.parametrize("input_type", ["checkbox", "radio"])
    def test_native_toggle(self, executor_for, input_type: str):
        box = FakeElement("input", input_type)
        result = executor_for(_page(terms=box)).execute(ActionStep(action="click", selector="#terms"))
        assert result.success is True
        assert box.checked is True
        assert box.events == ["focus", "click", "change"]

    def test_unexpected_error_becomes_result(self, executor_for):
        button = FakeElement("button")

        def explode():
            raise RuntimeError("detached from DOM")

        button.on_click = explode
        result = executor_for(_page(b=button)).execute(ActionStep(action="click", selector="#b"))
        assert result.success is False
        assert result.error == "RuntimeError: detached from DOM"


# ---------------------------------------------------------------------------
# 3. Input
# ---------------------------------------------------------------------------

class TestInput:
    """Typing is simulated one character at a time."""

    def test_clears_then_types(self, executor_for):
        field = FakeElement("input", "text", value="old")
        result = executor_for(_page(q=field)).execute(ActionStep(action="input", selector="#q", value="abc"))
        assert result.success is True
        assert field.value == "abc"
        assert field.events == ["focus", "set_value:", "input", "key:a", "key:b", "key:c", "change"]

    def test_clear_first_false_appends(self, executor_for):
        field = FakeElement("textarea", value="Hello ")
        step = ActionStep(action="input", selector="#t", value="world", clear_first=False)
        executor_for(_page(t=field)).execute(step)
        assert field.value == "Hello world"

    def test_content_editable(self, executor_for):
        editor = FakeElement("div", content_editable=True, text="draft")
        result = executor_for(_page(ed=editor)).execute(ActionStep(action="input", selector="#ed", value="Final"))
        assert result.success is True
        assert editor.text_content == "Final"
        assert editor.events == ["focus", "set_text", "input"]

    def test_non_editable_element(self, executor_for):
        result = executor_for(_page(d=FakeElement("div"))).execute(ActionStep(action="input", selector="#d", value="x"))
        assert result.error == "Element is not editable: <div>"

    def test_cancelled_while_typing(self, executor_for):
        field = FakeElement("input", "text")
        token = CancellationToken()
        token.cancel("Stopped by user")
        result = executor_for(_page(q=field)).execute(ActionStep(action="input", selector="#q", value="abc"), token)
        assert result.success is False
        assert result.error == "Aborted: Stopped by user"
        assert field.value == "a"


# ---------------------------------------------------------------------------
# 4. Select
# ---------------------------------------------------------------------------

class TestSelect:
    """Native selects and custom dropdowns match options case-insensitively."""

    OPTIONS = [("basic", "Basic"), ("pro", "Pro Plan"), ("team", "Team (annual)")]

    def test_native_select_by_text(self, executor_for):
        plan = FakeElement("select", options=self.OPTIONS)
        result = executor_for(_page(plan=plan)).execute(ActionStep(action="select", selector="#plan", value="pro plan"))
        assert result.success is True
        assert plan.value == "pro"
        assert plan.events == ["select:pro", "change", "input"]

    def test_native_select_partial_match(self, executor_for):
        plan = FakeElement("select", options=self.OPTIONS)
        executor_for(_page(plan=plan)).execute(ActionStep(action="select", selector="#plan", value="annual"))
        assert plan.value == "team"

    def test_native_select_missing_option(self, executor_for):
        plan = FakeElement("select", options=self.OPTIONS)
        result = executor_for(_page(plan=plan)).execute(ActionStep(action="select", selector="#plan", value="gold"))
        assert result.error == "Option not found: gold"

    def test_custom_dropdown_opens_then_picks(self, executor_for):
        basic = FakeElement("li", text="Basic", visible=False)
        pro = FakeElement("li", text="Pro Plan", visible=False)
        dropdown = FakeElement("div", role="combobox", items=[basic, pro])

        def open_menu():
            basic.visible = pro.visible = True

        dropdown.on_click = open_menu
        result = executor_for(_page(dd=dropdown)).execute(ActionStep(action="select", selector="#dd", value="Pro"))
        assert result.success is True
        assert dropdown.events == ["click"]
        assert pro.events == ["click"]
        assert basic.events == []

    def test_custom_dropdown_missing_option(self, executor_for):
        dropdown = FakeElement("div", items=[FakeElement("li", text="Basic")])
        result = executor_for(_page(dd=dropdown)).execute(ActionStep(action="select", selector="#dd", value="Gold"))
        assert result.error == "Option not found: Gold"


# ---------------------------------------------------------------------------
# 5. Scroll and extract
# ---------------------------------------------------------------------------

class TestScrollAndExtract:
    """Page scrolls, element scrolls and read-only extraction."""

    def test_page_scroll(self, executor_for):
        page = FakePage(elements={"body": FakeElement("body")})
        result = executor_for(page).execute(ActionStep(action="scroll", selector="body", value="bottom"))
        assert result.success is True
        assert page.scrolls == ["bottom"]

    def test_invalid_scroll_direction(self, executor_for):
        page = FakePage(elements={"body": FakeElement("body")})
        result = executor_for(page).execute(ActionStep(action="scroll", selector="body", value="sideways"))
        assert result.error == "Invalid scroll direction: sideways"

    def test_element_scroll(self, executor_for):
        footer = FakeElement("footer")
        executor_for(_page(f=footer)).execute(ActionStep(action="scroll", selector="#f"))
        assert footer.events == ["scroll_into_view"]

    @pytest.mark.parametrize(
        "element,expected",
        [
            (FakeElement("input", "text", value="42"), "42"),
            (FakeElement("select", value="pro", options=[("pro", " Pro Plan ")]), "Pro Plan"),
            (FakeElement("img", attributes={"alt": "Logo", "src": "/logo.png"}), "Logo"),
            (FakeElement("img", attributes={"src": "/logo.png"}), "/logo.png"),
            (FakeElement("a", text=" Docs ", attributes={"href": "/docs"}), "Docs (/docs)"),
            (FakeElement("h1", text="  Welcome back  "), "Welcome back"),
        ],
    )
    def test_extract(self, executor_for, element: FakeElement, expected: str):
        result = executor_for(_page(x=element)).execute(ActionStep(action="extract", selector="#x"))
        assert result.success is True
        assert result.extracted_data == expected

    def test_extract_does_not_modify(self, executor_for):
        field = FakeElement("input", "text", value="keep")
        executor_for(_page(x=field)).execute(ActionStep(action="extract", selector="#x"))
        assert field.events == []
        assert field.value == "keep"


# ---------------------------------------------------------------------------
# 6. Wait strategies
# ---------------------------------------------------------------------------

class TestWaitStrategies:
    """urlChange fails on timeout; domStable carries on."""

    def test_url_change_timeout_is_an_error(self, executor_for):
        page = _page(submit=FakeElement("button"))
        result = executor_for(page).execute(ActionStep(action="click", selector="#submit", wait_for="urlChange"))
        assert result.success is False
        assert result.error == "Timed out after 30ms waiting for URL change"

    def test_url_change_detected(self, executor_for):
        page = _page(submit=FakeElement("button"))
        page.elements["#submit"].on_click = lambda: setattr(page, "url", "https://shop.example.com/thanks")
        step = ActionStep(action="click", selector="#submit", wait_for="urlChange", timeout_ms=1000)
        assert executor_for(page).execute(step).success is True

    def test_dom_stable_timeout_still_succeeds(self, executor_for, caplog: pytest.LogCaptureFixture):
        page = _page(go=FakeElement("button"))
        page.churn = True
        result = executor_for(page).execute(ActionStep(action="click", selector="#go", wait_for="domStable"))
        assert result.success is True
        assert "DOM still changing" in caplog.text

    def test_network_idle(self, executor_for):
        page = _page(go=FakeElement("button"))
        result = executor_for(page).execute(ActionStep(action="click", selector="#go", wait_for="networkIdle"))
        assert result.success is True

    def test_wait_for_dom_stable_quiet_page(self, executor_for):
        executor = executor_for(FakePage())
        assert executor.wait_for_dom_stable(1000, CancellationToken()) is True


# ---------------------------------------------------------------------------
# 7. Privileged routing
# ---------------------------------------------------------------------------

class TestPrivilegedRouting:
    """Privileged actions go through the router."""

    def test_eval(self, executor_for):
        page = FakePage()
        page.eval_result = {"items": 3}
        result = executor_for(page).execute(ActionStep(action="eval", selector="", value="window.cart"))
        assert result.success is True
        assert result.extracted_data == '{"items": 3}'
        assert page.evaluated == ["window.cart"]

    def test_native_without_client(self, executor_for):
        step = ActionStep(action="native", selector="", value='{"op":"clipboard.read","args":{}}')
        result = executor_for(FakePage()).execute(step)
        assert result.success is False
        assert result.error == "No handler registered for native"

    def test_navigate_from_link(self, executor_for):
        page = _page(docs=FakeElement("a", attributes={"href": "/docs"}))
        result = executor_for(page).execute(ActionStep(action="navigate", selector="#docs"))
        assert result.success is True
        assert page.navigations == ["https://shop.example.com/docs"]
