"""Live page handle on top of Playwright's sync API.

Each element primitive does one thing (dispatch one event, append one
character, set one value); event ordering and timing stay in the executor.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pageclick.engine.protocols import ElementInfo

if TYPE_CHECKING:
    from playwright.sync_api import ElementHandle, Page

logger = logging.getLogger("pageclick.engine.playwright_page")

# Installs a MutationObserver once per document and returns its counter.
# A failed evaluation (page mid-navigation) reports -1, which the wait
# strategies read as "still changing".
_MUTATION_COUNTER_JS = """() => {
  if (!window.__pcMutations) {
    window.__pcMutations = { count: 0 };
    const target = document.body || document.documentElement;
    new MutationObserver((records) => { window.__pcMutations.count += records.length; })
      .observe(target, { childList: true, subtree: true, attributes: true, characterData: true });
  }
  return window.__pcMutations.count;
}"""

_DESCRIBE_JS = """el => {
  const r = el.getBoundingClientRect();
  return {
    tag: el.tagName.toLowerCase(),
    type: el instanceof HTMLInputElement ? (el.type || 'text') : null,
    contentEditable: !!el.isContentEditable,
    inViewport: r.top >= 0 && r.left >= 0 && r.bottom <= window.innerHeight && r.right <= window.innerWidth,
    role: el.getAttribute('role'),
  };
}"""

# Uses the prototype's value setter so framework-controlled inputs notice the change
_SET_VALUE_JS = """(el, v) => {
  const desc = Object.getOwnPropertyDescriptor(Object.getPrototypeOf(el), 'value');
  if (desc && desc.set) { desc.set.call(el, v); } else { el.value = v; }
}"""

_APPEND_CHAR_JS = """(el, ch) => {
  const desc = Object.getOwnPropertyDescriptor(Object.getPrototypeOf(el), 'value');
  const next = (el.value || '') + ch;
  if (desc && desc.set) { desc.set.call(el, next); } else { el.value = next; }
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new KeyboardEvent('keydown', { key: ch, bubbles: true }));
  el.dispatchEvent(new KeyboardEvent('keyup', { key: ch, bubbles: true }));
}"""

_SCROLL_JS = """([direction, amount]) => {
  if (direction === 'up') window.scrollBy({ top: -amount, behavior: 'smooth' });
  else if (direction === 'down') window.scrollBy({ top: amount, behavior: 'smooth' });
  else if (direction === 'top') window.scrollTo({ top: 0, behavior: 'smooth' });
  else if (direction === 'bottom') window.scrollTo({ top: document.body.scrollHeight, behavior: 'smooth' });
}"""


class PlaywrightElement:
    """PageElement backed by a Playwright ElementHandle."""

    def __init__(self, handle: ElementHandle) -> None:
        self._handle = handle

    def describe(self) -> ElementInfo:
        info = self._handle.evaluate(_DESCRIBE_JS)
        return ElementInfo(
            tag=info["tag"],
            input_type=info.get("type"),
            content_editable=bool(info.get("contentEditable")),
            in_viewport=bool(info.get("inViewport")),
            role=info.get("role"),
        )

    def scroll_into_view(self) -> None:
        self._handle.scroll_into_view_if_needed()

    def focus(self) -> None:
        self._handle.focus()

    def dispatch(self, event_type: str, key: str | None = None) -> None:
        init: dict[str, Any] = {"bubbles": True, "cancelable": True}
        if key is not None:
            init["key"] = key
        self._handle.dispatch_event(event_type, init)

    def native_click(self) -> None:
        self._handle.evaluate("el => el.click()")

    def get_value(self) -> str:
        return self._handle.evaluate("el => (el.value === undefined || el.value === null) ? '' : String(el.value)")

    def set_value(self, value: str) -> None:
        self._handle.evaluate(_SET_VALUE_JS, value)

    def append_character(self, char: str) -> None:
        self._handle.evaluate(_APPEND_CHAR_JS, char)

    def set_text_content(self, text: str) -> None:
        self._handle.evaluate("(el, t) => { el.textContent = t; }", text)

    def options(self) -> list[tuple[str, str]]:
        pairs = self._handle.evaluate(
            "el => Array.from(el.options || []).map(o => [o.value, (o.textContent || '').trim()])"
        )
        return [(str(v), str(t)) for v, t in pairs]

    def select_option_value(self, value: str) -> None:
        self._handle.select_option(value=value)

    def query_all(self, selector: str) -> list[PlaywrightElement]:
        return [PlaywrightElement(h) for h in self._handle.query_selector_all(selector)]

    def text(self) -> str:
        return self._handle.text_content() or ""

    def get_attribute(self, name: str) -> str | None:
        return self._handle.get_attribute(name)

    def is_visible(self) -> bool:
        return self._handle.is_visible()


class PlaywrightLivePage:
    """LivePage backed by a Playwright Page."""

    NAVIGATION_TIMEOUT_MS = 30_000

    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def raw(self) -> Page:
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    def query(self, selector: str) -> PlaywrightElement | None:
        from playwright.sync_api import Error as PlaywrightError

        try:
            handle = self._page.query_selector(selector)
        except PlaywrightError as exc:
            logger.debug("Invalid selector %r: %s", selector, exc)
            return None
        return PlaywrightElement(handle) if handle else None

    def query_all(self, selector: str) -> list[PlaywrightElement]:
        from playwright.sync_api import Error as PlaywrightError

        try:
            return [PlaywrightElement(h) for h in self._page.query_selector_all(selector)]
        except PlaywrightError:
            return []

    def scroll_page(self, direction: str, amount: int = 300) -> None:
        self._page.evaluate(_SCROLL_JS, [direction, amount])

    def mutation_count(self) -> int:
        from playwright.sync_api import Error as PlaywrightError

        try:
            return int(self._page.evaluate(_MUTATION_COUNTER_JS))
        except PlaywrightError:
            return -1

    def navigate(self, url: str) -> None:
        self._page.goto(url, wait_until="domcontentloaded", timeout=self.NAVIGATION_TIMEOUT_MS)

    def evaluate_expression(self, expression: str) -> Any:
        return self._page.evaluate(expression)


class BrowserSession:
    """Owns the Playwright browser, context and the page the agent drives."""

    def __init__(self, headless: bool = False, viewport: tuple[int, int] = (1440, 900)) -> None:
        self._headless = headless
        self._viewport = viewport
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None

    # -- Browser Lifecycle ---------------------------------------------------

    def start(self, start_url: str | None = None) -> PlaywrightLivePage:
        """Launch the browser and open the first page."""
        from playwright.sync_api import sync_playwright

        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self._headless)
        self._context = self._browser.new_context(
            viewport={"width": self._viewport[0], "height": self._viewport[1]},
            accept_downloads=True,
        )
        self._page = self._context.new_page()
        if start_url:
            self._page.goto(start_url, wait_until="domcontentloaded")
        return PlaywrightLivePage(self._page)

    def stop(self) -> None:
        """Close the browser and Playwright."""
        for closer in (self._context, self._browser):
            try:
                if closer is not None:
                    closer.close()
            except Exception:
                pass
        try:
            if self._playwright is not None:
                self._playwright.stop()
        except Exception:
            pass
        self._context = None
        self._browser = None
        self._playwright = None
        self._page = None

    @property
    def page(self) -> Any:
        return self._page

    def tab_urls(self) -> list[str]:
        if self._context is None:
            return []
        return [p.url for p in self._context.pages]

    def __enter__(self) -> BrowserSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
