# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""The in-page suppression script against real Chromium.

Opt-in: these tests launch a browser and run only with
``CLEANCAPTURE_BROWSER_TESTS=1`` (and ``playwright install chromium``).
Viewport is 1280x900 throughout.
"""

from __future__ import annotations

import pytest
from playwright.async_api import async_playwright

from cleancapture.overlay_suppressor import CLOSED_MARKER, HIDDEN_MARKER, suppress_overlays

pytestmark = pytest.mark.chromium


@pytest.fixture
async def page():
    async with async_playwright() as pw:
        browser = await pw.chromium.launch()
        context = await browser.new_context(viewport={"width": 1280, "height": 900})
        yield await context.new_page()
        await browser.close()


async def _is_hidden(page, selector: str) -> bool:
    return await page.eval_on_selector(
        selector,
        "(el) => getComputedStyle(el).display === 'none' && getComputedStyle(el).visibility === 'hidden'",
    )


async def _hidden_ids(page) -> list[str]:
    return await page.evaluate(f"() => [...document.querySelectorAll('[{HIDDEN_MARKER}]')].map((el) => el.id)")


class TestNavigationPrecedence:
    async def test_navigation_kept_overlay_hidden(self, page):
        await page.set_content(
            """
            <nav id="site-nav" class="banner" style="position:fixed;top:0;left:0;width:100%;height:60px">Home</nav>
            <div id="branded-header" class="site-header promo-banner"
                 style="position:sticky;top:0;width:100%;height:40px;z-index:5000">Shop</div>
            <div id="promo" class="banner" style="position:fixed;top:100px;left:0;width:100%;height:50px">Sale</div>
            """
        )
        report = await suppress_overlays(page)
        assert not await _is_hidden(page, "#site-nav")
        assert not await _is_hidden(page, "#branded-header")
        assert await _is_hidden(page, "#promo")
        assert report.positional == 1


class TestCornerButtons:
    async def test_bottom_right_hidden_top_left_kept(self, page):
        await page.set_content(
            """
            <div id="fab" style="position:fixed;right:20px;bottom:20px;width:100px;height:100px"></div>
            <div id="tl" style="position:fixed;left:20px;top:20px;width:100px;height:100px"></div>
            """
        )
        report = await suppress_overlays(page)
        assert await _is_hidden(page, "#fab")
        assert not await _is_hidden(page, "#tl")
        assert report.corner == 1

    async def test_bottom_left_hidden(self, page):
        await page.set_content('<div id="bl" style="position:fixed;left:10px;bottom:10px;width:60px;height:60px"></div>')
        await suppress_overlays(page)
        assert await _is_hidden(page, "#bl")


class TestLargeOverlay:
    async def test_tall_dialog_hidden_on_size_alone(self, page):
        await page.set_content(
            """
            <div id="big" role="dialog" style="position:absolute;top:0;left:0;width:300px;height:540px"></div>
            <div id="small" role="dialog" style="position:absolute;top:0;left:400px;width:300px;height:200px"></div>
            """
        )
        report = await suppress_overlays(page)
        assert await _is_hidden(page, "#big")
        assert not await _is_hidden(page, "#small")
        assert report.selector == 1
        assert report.positional == 0


class TestDismissal:
    async def test_scroll_lock_released(self, page):
        await page.set_content('<body style="overflow:hidden"><div style="height:3000px"></div></body>')
        await suppress_overlays(page)
        assert await page.evaluate("() => document.body.style.overflow") == "auto"
        assert await page.evaluate("() => document.documentElement.style.overflow") == "auto"

    async def test_navigating_anchor_not_clicked(self, page):
        await page.set_content('<a id="x" class="close" href="/elsewhere">close</a>')
        report = await suppress_overlays(page)
        assert report.closed == 0
        assert await page.get_attribute("#x", CLOSED_MARKER) is None


class TestIdempotence:
    PAGE = """
        <div id="cookie" class="cookie-consent" style="position:fixed;bottom:0;left:0;width:100%;height:80px">
          <button id="cookie-x" class="btn-close" onclick="window.cookieClicks = (window.cookieClicks || 0) + 1">x</button>
        </div>
        <div id="panel" class="menu-panel">panel</div>
        <button id="toggle" class="menu-close-toggle"
                onclick="window.toggleClicks = (window.toggleClicks || 0) + 1;
                         document.getElementById('panel').classList.toggle('collapsed')">toggle</button>
        <div id="fab" style="position:fixed;right:20px;bottom:120px;width:56px;height:56px"></div>
    """

    async def test_second_run_changes_nothing(self, page):
        await page.set_content(self.PAGE)
        first = await suppress_overlays(page)
        hidden_after_first = await _hidden_ids(page)
        panel_class = await page.get_attribute("#panel", "class")

        second = await suppress_overlays(page)

        assert first.hidden >= 2
        assert first.closed == 1
        assert (second.positional, second.selector, second.corner, second.closed) == (0, 0, 0, 0)
        assert await _hidden_ids(page) == hidden_after_first
        assert await page.get_attribute("#panel", "class") == panel_class
        assert await page.evaluate("() => window.toggleClicks") == 1

    async def test_close_control_inside_hidden_overlay_left_alone(self, page):
        await page.set_content(self.PAGE)
        await suppress_overlays(page)
        await suppress_overlays(page)
        assert await _is_hidden(page, "#cookie")
        assert await page.evaluate("() => window.cookieClicks ?? null") is None
