# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Overlay suppression engine — runs inside the rendered page.

The host sends one static script plus the serialised rule tables
(``OverlayRules.to_payload()``) through ``page.evaluate``. The script never
throws across the boundary: it returns ``{ok, ...counts}`` or
``{ok: false, error}``, and the host turns a failed or timed-out run into
``SuppressionFault``.

Suppression sets ``display: none`` + ``visibility: hidden`` and tags the
element with ``data-cleancapture-hidden``; nodes are never removed because
page scripts may still hold references to them. Tagged elements are skipped
on later passes. Activated close controls are tagged with
``data-cleancapture-closed`` and never clicked again, and controls inside
hidden elements are skipped, so running the script twice changes nothing
the second time.
"""

from __future__ import annotations

import asyncio
import logging

from playwright.async_api import Page

from . import SuppressionReport
from .errors import SuppressionFault
from .overlay_rules import DEFAULT_RULES, OverlayRules

logger = logging.getLogger(__name__)

HIDDEN_MARKER = "data-cleancapture-hidden"
CLOSED_MARKER = "data-cleancapture-closed"
DEFAULT_SUPPRESS_TIMEOUT_SECONDS = 10.0

# Static script, parameterised only through the evaluate() argument.
_SUPPRESS_OVERLAYS_JS = """(rules) => {
  const MARK = 'data-cleancapture-hidden';
  const CLOSED = 'data-cleancapture-closed';
  const counts = {scanned: 0, positional: 0, selector: 0, corner: 0, closed: 0, selectorErrors: 0};
  try {
    const vw = window.innerWidth;
    const vh = window.innerHeight;
    const pinned = new Set(rules.pinned);
    const navTags = new Set(rules.navTags);
    const structural = new Set(rules.structuralTags);
    const hasAny = (text, tokens) => tokens.some((t) => text.includes(t));
    const isHidden = (el) => el.hasAttribute(MARK);
    const hide = (el) => {
      el.style.setProperty('display', 'none', 'important');
      el.style.setProperty('visibility', 'hidden', 'important');
      el.setAttribute(MARK, '1');
    };

    // Pass A: pinned elements scored on lexicon + z-index; navigation wins.
    for (const el of document.querySelectorAll('*')) {
      counts.scanned++;
      if (isHidden(el)) continue;
      const style = window.getComputedStyle(el);
      if (!pinned.has(style.position)) continue;
      const tag = el.tagName.toLowerCase();
      const cls = (el.getAttribute('class') || '').toLowerCase();
      const id = (el.id || '').toLowerCase();
      const zIndex = parseInt(style.zIndex, 10) || 0;
      const isNav = navTags.has(tag) || rules.navTokens.some((t) => cls.includes(t) || id.includes(t));
      const isOverlay = hasAny(cls, rules.overlayClassTokens) ||
        hasAny(id, rules.overlayIdTokens) ||
        zIndex > rules.highZIndex;
      if (isOverlay && !isNav) {
        hide(el);
        counts.positional++;
      }
    }

    // Pass B: selector sweep, suppressed when large or pinned.
    for (const selector of rules.sweepSelectors) {
      let matches;
      try {
        matches = document.querySelectorAll(selector);
      } catch (e) {
        counts.selectorErrors++;
        continue;
      }
      for (const el of matches) {
        if (isHidden(el) || structural.has(el.tagName.toLowerCase())) continue;
        const rect = el.getBoundingClientRect();
        const large = rect.width > vw * rules.largeRatio || rect.height > vh * rules.largeRatio;
        if (large || pinned.has(window.getComputedStyle(el).position)) {
          hide(el);
          counts.selector++;
        }
      }
    }

    // Pass C: small pinned buttons anchored to a bottom corner.
    for (const el of document.querySelectorAll('*')) {
      if (isHidden(el)) continue;
      const rect = el.getBoundingClientRect();
      if (rect.width >= rules.cornerMaxWidth || rect.height >= rules.cornerMaxHeight) continue;
      if (rect.bottom <= vh - rules.cornerEdgeY) continue;
      if (!(rect.right > vw - rules.cornerEdgeX || rect.left < rules.cornerEdgeX)) continue;
      if (!pinned.has(window.getComputedStyle(el).position)) continue;
      hide(el);
      counts.corner++;
    }

    // Dismissal: activate each close control once; one failure never stops the sweep.
    // Controls inside hidden elements are left alone.
    let closers = [];
    try {
      closers = document.querySelectorAll(rules.closeSelector);
    } catch (e) {
      counts.selectorErrors++;
    }
    for (const btn of closers) {
      if (btn.hasAttribute(CLOSED) || btn.closest('[' + MARK + ']')) continue;
      try {
        if (btn.tagName === 'A') {
          const href = (btn.getAttribute('href') || '').trim().toLowerCase();
          if (href && !href.startsWith('#') && !href.startsWith('javascript:')) continue;
        }
        btn.setAttribute(CLOSED, '1');
        btn.click();
        counts.closed++;
      } catch (e) {}
    }

    // Undo scroll locks left by modals.
    for (const root of [document.documentElement, document.body]) {
      if (!root) continue;
      root.style.overflow = 'auto';
      root.style.overflowX = 'auto';
      root.style.overflowY = 'auto';
    }
    return Object.assign({ok: true, version: rules.version}, counts);
  } catch (e) {
    return Object.assign({ok: false, version: rules.version, error: String((e && e.message) || e)}, counts);
  }
}"""


async def suppress_overlays(
    page: Page,
    rules: OverlayRules = DEFAULT_RULES,
    *,
    timeout: float = DEFAULT_SUPPRESS_TIMEOUT_SECONDS,
) -> SuppressionReport:
    """Run the three suppression passes + dismissal on *page*.

    Raises:
        SuppressionFault: the script failed in-page, timed out, or returned
            something other than a result object.
    """
    try:
        raw = await asyncio.wait_for(page.evaluate(_SUPPRESS_OVERLAYS_JS, rules.to_payload()), timeout=timeout)
    except TimeoutError as exc:
        raise SuppressionFault(f"Overlay suppression timed out after {timeout:.1f}s") from exc
    except Exception as exc:
        raise SuppressionFault(f"Overlay suppression script failed: {exc}") from exc

    if not isinstance(raw, dict):
        raise SuppressionFault(f"Overlay suppression returned {type(raw).__name__}, expected object")
    if not raw.get("ok"):
        raise SuppressionFault(f"Overlay suppression failed in page: {raw.get('error', 'unknown error')}")

    if raw.get("selectorErrors"):
        logger.debug("Suppression skipped %d invalid selector(s)", raw["selectorErrors"])

    report = SuppressionReport(
        scanned=int(raw.get("scanned", 0)),
        positional=int(raw.get("positional", 0)),
        selector=int(raw.get("selector", 0)),
        corner=int(raw.get("corner", 0)),
        closed=int(raw.get("closed", 0)),
        rules_version=str(raw.get("version", rules.version)),
    )
    logger.info(
        "Overlays suppressed: hidden=%d (A=%d B=%d C=%d) closed=%d scanned=%d",
        report.hidden,
        report.positional,
        report.selector,
        report.corner,
        report.closed,
        report.scanned,
    )
    return report
