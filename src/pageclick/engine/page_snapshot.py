"""Page snapshot capture.

One script runs in the page and returns plain data; everything after that
(step-indicator detection, text trimming, conversion to dataclasses) happens
in Python so it can be tested without a browser.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from pageclick.engine.protocols import FormProgress, InteractiveElement, PageSnapshot

if TYPE_CHECKING:
    from pageclick.engine.playwright_page import PlaywrightLivePage

logger = logging.getLogger("pageclick.engine.page_snapshot")

MAX_ELEMENTS = 800
MAX_ELEMENT_TEXT = 120
MAX_TEXT_EXCERPT = 3000
MAX_UNFILLED_LABELS = 10

STEP_PATTERNS = (
    re.compile(r"step\s+(\d+)\s+(?:of|/)\s+(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:of|/)\s*(\d+)\s*step", re.IGNORECASE),
)

# Values of sensitive inputs never leave the page: the script marks them
# redacted and omits the value.
CAPTURE_JS = r"""() => {
  const SENSITIVE_NAME = /password|passwd|pwd|cvv|cvc|card.?num|otp|pin|secret|token/i;
  const isSensitive = (el) => {
    if (!(el instanceof HTMLInputElement)) return false;
    if (el.type === 'password') return true;
    if ((el.getAttribute('autocomplete') || '').startsWith('cc-')) return true;
    return SENSITIVE_NAME.test(`${el.name || ''} ${el.id || ''} ${el.getAttribute('placeholder') || ''}`);
  };
  const isVisible = (el) => {
    const s = window.getComputedStyle(el);
    if (s.display === 'none' || s.visibility === 'hidden' || s.opacity === '0') return false;
    const r = el.getBoundingClientRect();
    return r.width > 0 && r.height > 0;
  };
  const selectorFor = (el) => {
    if (el.id) return `#${CSS.escape(el.id)}`;
    const label = el.getAttribute('aria-label');
    if (label) return `${el.tagName.toLowerCase()}[aria-label="${CSS.escape(label)}"]`;
    const testId = el.getAttribute('data-testid');
    if (testId) return `[data-testid="${CSS.escape(testId)}"]`;
    const parts = [];
    let cur = el;
    while (cur && cur !== document.documentElement) {
      if (cur.id) { parts.unshift(`#${CSS.escape(cur.id)}`); break; }
      let part = cur.tagName.toLowerCase();
      const parent = cur.parentElement;
      if (parent) {
        const same = Array.from(parent.children).filter((c) => c.tagName === cur.tagName);
        if (same.length > 1) part += `:nth-of-type(${same.indexOf(cur) + 1})`;
      }
      parts.unshift(part);
      cur = parent;
    }
    return parts.join(' > ');
  };
  const ROLES = ['button', 'link', 'tab', 'menuitem', 'checkbox', 'radio', 'switch', 'option', 'combobox'];
  const interactive = 'a, button, input:not([type="hidden"]), select, textarea, summary, [role], [aria-label], [data-testid], [contenteditable="true"]';
  const elements = [];
  for (const el of document.querySelectorAll(interactive)) {
    if (elements.length >= __MAX__) break;
    const role = el.getAttribute('role');
    if (role && !ROLES.includes(role) && !['A', 'BUTTON', 'INPUT', 'SELECT', 'TEXTAREA'].includes(el.tagName)) continue;
    if (!isVisible(el)) continue;
    const tag = el.tagName.toLowerCase();
    const item = { selector: selectorFor(el), tag, role, disabled: el.hasAttribute('disabled') };
    if (el instanceof HTMLInputElement || el instanceof HTMLTextAreaElement) {
      item.type = el instanceof HTMLInputElement ? (el.type || 'text') : 'textarea';
      item.text = el.getAttribute('placeholder') || el.getAttribute('aria-label') || '';
      if (isSensitive(el)) { item.redacted = true; }
      else {
        if (el.type === 'checkbox' || el.type === 'radio') item.checked = el.checked;
        else if (el.value) item.value = el.value.substring(0, 100);
      }
    } else if (el instanceof HTMLSelectElement) {
      const opt = el.options[el.selectedIndex];
      if (opt) item.value = opt.text.substring(0, 80);
      item.options = Array.from(el.options).slice(0, 10).map((o) => o.text.trim());
      item.text = el.getAttribute('aria-label') || '';
    } else {
      item.text = (el.textContent || '').replace(/\s+/g, ' ').trim();
    }
    elements.push(item);
  }

  const current = document.querySelector('[aria-current="step"], [aria-current="page"], .stepper .active, .step.active, .wizard-step.current');
  let progress = null;
  const bar = document.querySelector('[role="progressbar"]');
  if (bar && bar.getAttribute('aria-valuenow')) {
    progress = Math.round(parseFloat(bar.getAttribute('aria-valuenow')) / parseFloat(bar.getAttribute('aria-valuemax') || '100') * 100);
  }
  let total = 0, filled = 0;
  const unfilled = [];
  for (const el of document.querySelectorAll('input:not([type="hidden"]):not([type="submit"]):not([type="button"]):not([type="reset"]), textarea, select')) {
    if (!isVisible(el) || isSensitive(el)) continue;
    total++;
    const has = el instanceof HTMLSelectElement ? el.selectedIndex > 0 : !!(el.value || '').trim();
    if (has) filled++;
    else unfilled.push(el.getAttribute('aria-label') || el.getAttribute('placeholder') || el.getAttribute('name') || `${el.tagName.toLowerCase()}[${el.type || 'text'}]`);
  }
  const loading = ['[aria-busy="true"]', '.loading', '.spinner', '.skeleton', '[class*="loading"]', '[class*="spinner"]', '[class*="skeleton"]', '.shimmer']
    .some((sel) => { const el = document.querySelector(sel); return !!el && isVisible(el); });
  const modal = !!document.querySelector('[role="dialog"][aria-modal="true"], dialog[open]');
  return {
    url: location.href,
    title: document.title || '',
    description: (document.querySelector('meta[name="description"]') || { getAttribute: () => '' }).getAttribute('content') || '',
    readyState: document.readyState,
    loading,
    modal,
    bodyText: (document.body ? document.body.innerText : '').substring(0, 50000),
    elements,
    form: {
      activeStep: current ? (current.textContent || '').replace(/\s+/g, ' ').trim().substring(0, 80) : null,
      progressPercent: progress,
      totalFields: total,
      filledFields: filled,
      unfilledFields: unfilled,
    },
  };
}"""


def detect_step_indicator(text: str) -> str | None:
    """Find a "Step 2 of 5" style indicator in page text."""
    for pattern in STEP_PATTERNS:
        m = pattern.search(text)
        if m:
            return m.group(0).strip()
    return None


def _clean_text(text: str, limit: int) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def form_progress_from_dict(form: dict[str, Any] | None, body_text: str) -> FormProgress | None:
    form = form or {}
    step_indicator = detect_step_indicator(body_text)
    active_step = form.get("activeStep") or None
    progress = form.get("progressPercent")
    total = int(form.get("totalFields") or 0)
    if not step_indicator and not active_step and progress is None and total == 0:
        return None
    return FormProgress(
        step_indicator=step_indicator,
        active_step=active_step,
        progress_percent=float(progress) if progress is not None else None,
        total_fields=total,
        filled_fields=int(form.get("filledFields") or 0),
        unfilled_fields=tuple(str(f) for f in (form.get("unfilledFields") or [])[:MAX_UNFILLED_LABELS]),
    )


def snapshot_from_dict(data: dict[str, Any]) -> PageSnapshot:
    """Build a PageSnapshot from the capture script's raw output."""
    body_text = data.get("bodyText") or ""
    elements = []
    for raw in (data.get("elements") or [])[:MAX_ELEMENTS]:
        elements.append(
            InteractiveElement(
                selector=raw.get("selector") or "",
                tag=raw.get("tag") or "",
                text=_clean_text(raw.get("text") or "", MAX_ELEMENT_TEXT),
                role=raw.get("role"),
                input_type=raw.get("type"),
                value=None if raw.get("redacted") else raw.get("value"),
                disabled=bool(raw.get("disabled")),
                checked=raw.get("checked"),
                options=tuple(raw.get("options") or ()),
                redacted=bool(raw.get("redacted")),
            )
        )
    ready_state = data.get("readyState") or "complete"
    return PageSnapshot(
        url=data.get("url") or "",
        title=data.get("title") or "",
        elements=tuple(elements),
        text_excerpt=_clean_text(body_text, MAX_TEXT_EXCERPT),
        description=data.get("description") or "",
        ready_state=ready_state,
        is_loading=bool(data.get("loading")) or ready_state == "loading",
        has_modal=bool(data.get("modal")),
        form_progress=form_progress_from_dict(data.get("form"), body_text),
    )


class PlaywrightSnapshotProvider:
    """SnapshotProvider reading the live Playwright page."""

    def __init__(self, page: PlaywrightLivePage) -> None:
        self._page = page

    def capture(self) -> PageSnapshot | None:
        """Capture the page, or None when the page cannot be read (e.g. restricted or navigating)."""
        from playwright.sync_api import Error as PlaywrightError

        url = self._page.url
        try:
            data = self._page.raw.evaluate(CAPTURE_JS.replace("__MAX__", str(MAX_ELEMENTS)))
        except PlaywrightError as exc:
            logger.warning("Snapshot of %s failed: %s", url, exc)
            return None
        if not isinstance(data, dict):
            return None
        return snapshot_from_dict(data)
