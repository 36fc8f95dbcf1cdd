"""Privileged action handlers.

These actions do not run as page-level DOM manipulation: navigation, date
controls, JavaScript evaluation, file downloads, tab groups and the native
companion. The executor validates the step and hands it to the router; each
handler either returns extracted data or raises ActionError.
"""

from __future__ import annotations

import dataclasses
import fnmatch
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Protocol
from urllib.parse import unquote, urljoin, urlparse

import requests

from pageclick.engine.action_executor import ActionError
from pageclick.engine.cancellation import CancellationToken
from pageclick.engine.native_host import SUPPORTED_OPS, NativeHostError
from pageclick.engine.protocols import ActionStep, LivePage
from pageclick.models import DEBUG_MAX_BODY_CHARS

logger = logging.getLogger("pageclick.engine.privileged")

Handler = Callable[[ActionStep, LivePage, CancellationToken], Optional[str]]

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")


class NativeClient(Protocol):
    def request(self, op: str, args: dict[str, Any] | None = None) -> dict[str, Any]: ...


class PrivilegedActionRouter:
    """Maps privileged action names to handlers."""

    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = dict(handlers or {})

    def register(self, action: str, handler: Handler) -> None:
        self._handlers[action] = handler

    def handles(self, action: str) -> bool:
        return action in self._handlers

    def handle(self, step: ActionStep, page: LivePage, token: CancellationToken) -> str | None:
        handler = self._handlers.get(step.action)
        if handler is None:
            raise ActionError(f"No handler registered for {step.action}")
        token.raise_if_cancelled()
        return handler(step, page, token)

    @classmethod
    def with_defaults(
        cls,
        downloads_dir: Path | None = None,
        native_client: NativeClient | None = None,
        tab_groups: TabGroupRegistry | None = None,
        session: requests.Session | None = None,
    ) -> PrivilegedActionRouter:
        """Router with every built-in handler.

        ``native`` is only registered when a native client is supplied.
        """
        router = cls(
            {
                "navigate": navigate_handler,
                "select_date": select_date_handler,
                "eval": eval_handler,
                "download": Downloader(downloads_dir or Path("~/Downloads").expanduser(), session=session),
                "tabgroup": TabGroupHandler(tab_groups),
            }
        )
        if native_client is not None:
            router.register("native", NativeHandler(native_client))
        return router


# -- Navigation --------------------------------------------------------------


def normalize_url(target: str, base_url: str = "") -> str:
    """Make *target* absolute. Bare hosts get https://, paths resolve against *base_url*."""
    target = target.strip()
    if target.lower().startswith("javascript:"):
        raise ActionError("Refusing to navigate to a javascript: URL")
    if _SCHEME_RE.match(target):
        return target
    if target.startswith(("/", "./", "../", "?", "#")):
        if not base_url:
            raise ActionError(f"Cannot resolve relative URL without a page: {target}")
        return urljoin(base_url, target)
    if target.startswith("//"):
        return "https:" + target
    return "https://" + target


def _element_url(step: ActionStep, page: LivePage, *attributes: str) -> str | None:
    if not step.selector:
        return None
    element = page.query(step.selector)
    if element is None:
        raise ActionError(f"Element not found: {step.selector}")
    for attribute in attributes:
        value = element.get_attribute(attribute)
        if value:
            return value
    return None


def navigate_handler(step: ActionStep, page: LivePage, token: CancellationToken) -> None:
    target = step.value or _element_url(step, page, "href")
    if not target:
        raise ActionError("Navigate action requires a URL")
    url = normalize_url(target, page.url)
    logger.info("Navigating to %s", url)
    page.navigate(url)


# -- Dates -------------------------------------------------------------------


def normalize_date_value(value: str) -> str:
    """Convert common date formats to ISO YYYY-MM-DD.

    Handles:
    - MM/DD/YYYY and M/D/YYYY
    - YYYY-MM-DD (already ISO, pass through)
    - Month DD, YYYY and DD Month YYYY
    """
    value = value.strip()
    if re.match(r"^\d{4}-\d{2}-\d{2}$", value):
        return value

    m = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{4})$", value)
    if m:
        month, day, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        return f"{year:04d}-{month:02d}-{day:02d}"

    for fmt in ("%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%d %b %Y", "%m-%d-%Y"):
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    raise ActionError(f"Unrecognised date: {value}")


def select_date_handler(step: ActionStep, page: LivePage, token: CancellationToken) -> None:
    if not step.value:
        raise ActionError("Select date action requires a value")
    iso = normalize_date_value(step.value)
    element = page.query(step.selector)
    if element is None:
        raise ActionError(f"Element not found: {step.selector}")

    info = element.describe()
    if info.tag != "input" and not info.content_editable:
        raise ActionError(f"Element is not a date field: <{info.tag}>")

    if info.input_type == "month":
        formatted = iso[:7]
    elif info.input_type == "datetime-local":
        formatted = f"{iso}T00:00"
    else:
        formatted = iso
    element.focus()
    element.set_value(formatted)
    element.dispatch("input")
    element.dispatch("change")
    if element.get_value() != formatted:
        raise ActionError(f"Date field did not accept {formatted}")


# -- Eval --------------------------------------------------------------------


def truncate_result(value: Any, limit: int = DEBUG_MAX_BODY_CHARS) -> str:
    if isinstance(value, str):
        text = value
    elif value is None:
        text = ""
    else:
        text = json.dumps(value, default=str)
    return text[:limit]


def eval_handler(step: ActionStep, page: LivePage, token: CancellationToken) -> str:
    if not step.value:
        raise ActionError("Eval action requires an expression")
    return truncate_result(page.evaluate_expression(step.value))


# -- Download ----------------------------------------------------------------


class Downloader:
    """Streams a URL from the page into the downloads folder."""

    CHUNK_SIZE = 64 * 1024

    def __init__(self, downloads_dir: Path, session: requests.Session | None = None, timeout: float = 30.0) -> None:
        self.downloads_dir = downloads_dir
        self._session = session or requests.Session()
        self._timeout = timeout

    def __call__(self, step: ActionStep, page: LivePage, token: CancellationToken) -> str:
        target = step.value or _element_url(step, page, "href", "src")
        if not target:
            raise ActionError("Download action requires a URL or a link/image selector")
        url = urljoin(page.url, target.strip())
        if urlparse(url).scheme not in ("http", "https"):
            raise ActionError(f"Only http(s) downloads are supported: {url}")

        logger.info("Downloading %s", url)
        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as resp:
                resp.raise_for_status()
                path = self._unique_path(self._filename(url, resp.headers.get("Content-Disposition", "")))
                self.downloads_dir.mkdir(parents=True, exist_ok=True)
                try:
                    with open(path, "wb") as f:
                        for chunk in resp.iter_content(chunk_size=self.CHUNK_SIZE):
                            token.raise_if_cancelled()
                            f.write(chunk)
                except BaseException:
                    path.unlink(missing_ok=True)
                    raise
        except requests.RequestException as exc:
            raise ActionError(f"Download failed: {exc}") from exc
        return str(path)

    @staticmethod
    def _filename(url: str, content_disposition: str) -> str:
        m = re.search(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", content_disposition, re.IGNORECASE)
        name = unquote(m.group(1)) if m else unquote(Path(urlparse(url).path).name)
        name = Path(name).name.strip()
        return name or "download"

    def _unique_path(self, filename: str) -> Path:
        path = self.downloads_dir / filename
        stem, suffix = path.stem, path.suffix
        n = 1
        while path.exists():
            path = self.downloads_dir / f"{stem} ({n}){suffix}"
            n += 1
        return path


# -- Tab groups --------------------------------------------------------------

TAB_GROUP_COLORS = ("grey", "blue", "red", "yellow", "green", "pink", "purple", "cyan", "orange")


@dataclasses.dataclass
class TabGroup:
    name: str
    color: str = "grey"
    tabs: list[str] = dataclasses.field(default_factory=list)


class TabGroupRegistry:
    """Named groups of open tabs.

    ``list_tabs`` returns the URLs of the currently open tabs; URL patterns in
    create/add operations are matched against them with shell-style globs.
    """

    def __init__(self, list_tabs: Callable[[], list[str]] | None = None) -> None:
        self._list_tabs = list_tabs or (lambda: [])
        self.groups: dict[str, TabGroup] = {}

    def _match(self, patterns: list[str]) -> list[str]:
        return [url for url in self._list_tabs() if any(fnmatch.fnmatch(url, p) for p in patterns)]

    def create(self, name: str, patterns: list[str], color: str = "grey") -> TabGroup:
        if name in self.groups:
            raise ActionError(f"Tab group already exists: {name}")
        if color not in TAB_GROUP_COLORS:
            raise ActionError(f"Invalid tab group color: {color}")
        group = TabGroup(name=name, color=color, tabs=self._match(patterns))
        self.groups[name] = group
        return group

    def add(self, name: str, patterns: list[str]) -> TabGroup:
        group = self.groups.get(name)
        if group is None:
            raise ActionError(f"No tab group named {name}")
        for url in self._match(patterns):
            if url not in group.tabs:
                group.tabs.append(url)
        return group

    def all_groups(self) -> list[TabGroup]:
        return list(self.groups.values())


class TabGroupHandler:
    def __init__(self, registry: TabGroupRegistry | None = None) -> None:
        self._registry = registry

    def __call__(self, step: ActionStep, page: LivePage, token: CancellationToken) -> str:
        # Without a browser-level registry only the current tab is known
        registry = self._registry
        if registry is None:
            registry = self._registry = TabGroupRegistry(lambda: [page.url])

        try:
            op = json.loads(step.value or "")
        except ValueError as exc:
            raise ActionError("Tabgroup value must be a JSON object") from exc
        if not isinstance(op, dict):
            raise ActionError("Tabgroup value must be a JSON object")

        kind = op.get("op")
        name = op.get("name") or op.get("title")
        patterns = [str(p) for p in op.get("urls") or op.get("tabs") or []]
        if kind == "list":
            return json.dumps([dataclasses.asdict(g) for g in registry.all_groups()])
        if not name:
            raise ActionError(f"Tabgroup {kind} requires a name")
        if kind == "create":
            group = registry.create(str(name), patterns, str(op.get("color") or "grey"))
        elif kind == "add":
            group = registry.add(str(name), patterns)
        else:
            raise ActionError(f"Unknown tabgroup op: {kind}")
        return json.dumps(dataclasses.asdict(group))


# -- Native companion --------------------------------------------------------


class NativeHandler:
    def __init__(self, client: NativeClient) -> None:
        self._client = client

    def __call__(self, step: ActionStep, page: LivePage, token: CancellationToken) -> str:
        try:
            payload = json.loads(step.value or "")
        except ValueError as exc:
            raise ActionError("Native value must be a JSON object with op and args") from exc
        if not isinstance(payload, dict):
            raise ActionError("Native value must be a JSON object with op and args")

        op = payload.get("op")
        if op not in SUPPORTED_OPS:
            raise ActionError(f'Unsupported native operation "{op}"')
        try:
            response = self._client.request(op, payload.get("args") or {})
        except NativeHostError as exc:
            raise ActionError(f"Native companion unavailable: {exc}") from exc
        if not response.get("ok"):
            raise ActionError(response.get("error") or "Native operation failed")
        return json.dumps(response.get("data"))
