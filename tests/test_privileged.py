"""Unit tests for pageclick.engine.privileged -- navigation, dates, eval, downloads, tab groups, native."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from pageclick.engine.action_executor import ActionError
from pageclick.engine.cancellation import CancellationToken, TaskAborted
from pageclick.engine.native_host import NativeHostError
from pageclick.engine.privileged import (
    Downloader,
    NativeHandler,
    PrivilegedActionRouter,
    TabGroupHandler,
    TabGroupRegistry,
    eval_handler,
    normalize_date_value,
    normalize_url,
    select_date_handler,
    truncate_result,
)
from pageclick.engine.protocols import ActionStep

from conftest import FakeElement, FakePage


def _step(action: str, value: str | None = None, selector: str = "") -> ActionStep:
    return ActionStep(action=action, selector=selector, value=value)


# ---------------------------------------------------------------------------
# 1. URLs and dates
# ---------------------------------------------------------------------------

class TestNormalizeUrl:
    """normalize_url makes targets absolute."""

    @pytest.mark.parametrize(
        "target,expected",
        [
            ("example.com", "https://example.com"),
            ("  https://example.com/a  ", "https://example.com/a"),
            ("//cdn.example.com/x", "https://cdn.example.com/x"),
            ("/account", "https://shop.example.com/account"),
            ("?page=2", "https://shop.example.com/cart?page=2"),
            ("mailto:help@example.com", "mailto:help@example.com"),
        ],
    )
    def test_targets(self, target: str, expected: str):
        assert normalize_url(target, "https://shop.example.com/cart") == expected

    def test_javascript_urls_are_refused(self):
        with pytest.raises(ActionError, match="javascript"):
            normalize_url("JavaScript:alert(1)")

    def test_relative_without_base(self):
        with pytest.raises(ActionError, match="Cannot resolve relative URL"):
            normalize_url("/account")


class TestDates:
    """normalize_date_value and the select_date handler."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2026-03-09", "2026-03-09"),
            ("3/9/2026", "2026-03-09"),
            ("03/09/2026", "2026-03-09"),
            ("March 9, 2026", "2026-03-09"),
            ("Mar 9, 2026", "2026-03-09"),
            ("9 March 2026", "2026-03-09"),
        ],
    )
    def test_formats(self, value: str, expected: str):
        assert normalize_date_value(value) == expected

    def test_unrecognised(self):
        with pytest.raises(ActionError, match="Unrecognised date"):
            normalize_date_value("next tuesday")

    def test_sets_iso_value_and_fires_events(self):
        field = FakeElement("input", "date")
        page = FakePage(elements={"#dob": field})
        select_date_handler(_step("select_date", "12/25/2026", "#dob"), page, CancellationToken())
        assert field.value == "2026-12-25"
        assert field.events == ["focus", "set_value:2026-12-25", "input", "change"]

    @pytest.mark.parametrize("input_type,expected", [("month", "2026-12"), ("datetime-local", "2026-12-25T00:00")])
    def test_input_type_formats(self, input_type: str, expected: str):
        field = FakeElement("input", input_type)
        page = FakePage(elements={"#d": field})
        select_date_handler(_step("select_date", "2026-12-25", "#d"), page, CancellationToken())
        assert field.value == expected

    def test_rejected_value(self):
        field = FakeElement("input", "date", accepts_value=False)
        page = FakePage(elements={"#d": field})
        with pytest.raises(ActionError, match="did not accept"):
            select_date_handler(_step("select_date", "2026-12-25", "#d"), page, CancellationToken())

    def test_not_a_date_field(self):
        page = FakePage(elements={"#d": FakeElement("span")})
        with pytest.raises(ActionError, match="not a date field"):
            select_date_handler(_step("select_date", "2026-12-25", "#d"), page, CancellationToken())


# ---------------------------------------------------------------------------
# 2. Eval
# ---------------------------------------------------------------------------

class TestEval:
    """Eval results are serialized and truncated."""

    def test_truncation(self):
        page = FakePage()
        page.eval_result = "z" * 5000
        assert eval_handler(_step("eval", "document.body.innerText"), page, CancellationToken()) == "z" * 2000

    def test_none_and_objects(self):
        assert truncate_result(None) == ""
        assert truncate_result([1, "a"]) == '[1, "a"]'

    def test_requires_expression(self):
        with pytest.raises(ActionError, match="requires an expression"):
            eval_handler(_step("eval"), FakePage(), CancellationToken())


# ---------------------------------------------------------------------------
# 3. Downloads
# ---------------------------------------------------------------------------

def _mock_session(chunks=(b"%PDF", b"-1.7"), headers=None) -> MagicMock:
    resp = MagicMock()
    resp.headers = headers or {}
    resp.iter_content.return_value = list(chunks)
    session = MagicMock()
    session.get.return_value.__enter__.return_value = resp
    return session


class TestDownloader:
    """Downloader streams http(s) URLs into the downloads folder."""

    def test_download_from_link(self, tmp_path: Path):
        session = _mock_session()
        page = FakePage(elements={"#invoice": FakeElement("a", attributes={"href": "/files/invoice%202026.pdf"})})
        path = Downloader(tmp_path, session=session)(_step("download", selector="#invoice"), page, CancellationToken())

        assert Path(path) == tmp_path / "invoice 2026.pdf"
        assert Path(path).read_bytes() == b"%PDF-1.7"
        session.get.assert_called_once_with("https://shop.example.com/files/invoice%202026.pdf", stream=True, timeout=30.0)

    def test_content_disposition_and_unique_names(self, tmp_path: Path):
        (tmp_path / "report.csv").write_text("old")
        session = _mock_session(headers={"Content-Disposition": 'attachment; filename="report.csv"'})
        path = Downloader(tmp_path, session=session)(
            _step("download", "https://files.example.com/dl?id=7"), FakePage(), CancellationToken()
        )
        assert Path(path).name == "report (1).csv"

    def test_rejects_non_http(self, tmp_path: Path):
        with pytest.raises(ActionError, match="Only http"):
            Downloader(tmp_path, session=MagicMock())(_step("download", "ftp://x.example/a"), FakePage(), CancellationToken())

    def test_request_failure(self, tmp_path: Path):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ActionError, match="Download failed"):
            Downloader(tmp_path, session=session)(_step("download", "https://x.example/a.zip"), FakePage(), CancellationToken())

    def test_cancel_removes_partial_file(self, tmp_path: Path):
        token = CancellationToken()
        token.cancel("Stopped")
        with pytest.raises(TaskAborted):
            Downloader(tmp_path, session=_mock_session())(_step("download", "https://x.example/a.zip"), FakePage(), token)
        assert list(tmp_path.iterdir()) == []

    def test_requires_target(self, tmp_path: Path):
        with pytest.raises(ActionError, match="requires a URL"):
            Downloader(tmp_path, session=MagicMock())(_step("download"), FakePage(), CancellationToken())


# ---------------------------------------------------------------------------
# 4. Tab groups
# ---------------------------------------------------------------------------

class TestTabGroups:
    """Tab groups match open tab URLs with glob patterns."""

    TABS = ["https://github.com/a/b", "https://docs.python.org/3/", "https://github.com/c/d"]

    def _run(self, handler: TabGroupHandler, op: dict) -> object:
        return json.loads(handler(_step("tabgroup", json.dumps(op)), FakePage(), CancellationToken()))

    def test_create_add_list(self):
        handler = TabGroupHandler(TabGroupRegistry(lambda: list(self.TABS)))
        created = self._run(handler, {"op": "create", "name": "Code", "urls": ["*github.com*"], "color": "blue"})
        assert created == {"name": "Code", "color": "blue", "tabs": [self.TABS[0], self.TABS[2]]}

        added = self._run(handler, {"op": "add", "name": "Code", "urls": ["*python.org*", "*github.com/a*"]})
        assert added["tabs"] == [self.TABS[0], self.TABS[2], self.TABS[1]]

        assert [g["name"] for g in self._run(handler, {"op": "list"})] == ["Code"]

    def test_errors(self):
        handler = TabGroupHandler(TabGroupRegistry(lambda: []))
        with pytest.raises(ActionError, match="No tab group named"):
            self._run(handler, {"op": "add", "name": "Missing", "urls": []})
        with pytest.raises(ActionError, match="Invalid tab group color"):
            self._run(handler, {"op": "create", "name": "X", "color": "magenta"})
        with pytest.raises(ActionError, match="Unknown tabgroup op"):
            self._run(handler, {"op": "rename", "name": "X"})
        with pytest.raises(ActionError, match="JSON object"):
            handler(_step("tabgroup", "create Code"), FakePage(), CancellationToken())

    def test_without_registry_only_current_tab_is_known(self):
        handler = TabGroupHandler()
        created = self._run(handler, {"op": "create", "name": "Here", "urls": ["*shop.example.com*"]})
        assert created["tabs"] == ["https://shop.example.com/cart"]


# ---------------------------------------------------------------------------
# 5. Native companion and routing
# ---------------------------------------------------------------------------

class TestNativeHandler:
    """NativeHandler validates the op and relays the companion's answer."""

    def test_success(self):
        client = MagicMock()
        client.request.return_value = {"ok": True, "data": {"text": "copied"}}
        out = NativeHandler(client)(_step("native", '{"op":"clipboard.read","args":{}}'), FakePage(), CancellationToken())
        assert json.loads(out) == {"text": "copied"}
        client.request.assert_called_once_with("clipboard.read", {})

    def test_unsupported_op_never_reaches_client(self):
        client = MagicMock()
        with pytest.raises(ActionError, match='Unsupported native operation "shell.exec"'):
            NativeHandler(client)(_step("native", '{"op":"shell.exec"}'), FakePage(), CancellationToken())
        client.request.assert_not_called()

    def test_error_response(self):
        client = MagicMock()
        client.request.return_value = {"ok": False, "error": "Path not allowed"}
        with pytest.raises(ActionError, match="Path not allowed"):
            NativeHandler(client)(
                _step("native", '{"op":"fs.readText","args":{"path":"/etc/passwd"}}'), FakePage(), CancellationToken()
            )

    def test_host_unavailable(self):
        client = MagicMock()
        client.request.side_effect = NativeHostError("pipe closed")
        with pytest.raises(ActionError, match="Native companion unavailable"):
            NativeHandler(client)(_step("native", '{"op":"clipboard.read"}'), FakePage(), CancellationToken())


class TestRouter:
    """The router dispatches by action name."""

    def test_defaults_without_native(self, tmp_path: Path):
        router = PrivilegedActionRouter.with_defaults(downloads_dir=tmp_path)
        for action in ("navigate", "select_date", "eval", "download", "tabgroup"):
            assert router.handles(action)
        assert not router.handles("native")

    def test_native_registered_with_client(self):
        assert PrivilegedActionRouter.with_defaults(native_client=MagicMock()).handles("native")

    def test_handle_checks_cancellation(self):
        router = PrivilegedActionRouter({"eval": eval_handler})
        token = CancellationToken()
        token.cancel()
        with pytest.raises(TaskAborted):
            router.handle(_step("eval", "1"), FakePage(), token)
