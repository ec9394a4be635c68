# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for CaptureController — validate → navigate → settle → suppress → rasterize.

Playwright is mocked; the BrowserManager is real so context accounting is checked end to end.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from cleancapture import JPEG_CONTENT_TYPE
from cleancapture.browser_manager import BrowserManager
from cleancapture.capture import CaptureConfig, CaptureController
from cleancapture.errors import ErrorKind, InvalidRequest
from cleancapture.overlay_rules import OverlayRules
from cleancapture.problem_details import from_result as problem_from_result
from tests._capture_helpers import make_mock_browser, make_mock_page


def _fast_config(**overrides) -> CaptureConfig:
    defaults = {"settle_ms": 0, "post_suppress_ms": 0}
    defaults.update(overrides)
    return CaptureConfig(**defaults)


@pytest.fixture
def mock_pw():
    """Patch async_playwright; yields (playwright, browser, page)."""
    browser, page = make_mock_browser(make_mock_page())
    pw = AsyncMock()
    pw.chromium.launch = AsyncMock(return_value=browser)
    pw.stop = AsyncMock()
    with patch("cleancapture.browser_manager.async_playwright") as mock_apw:
        mock_apw.return_value.start = AsyncMock(return_value=pw)
        yield pw, browser, page


@pytest.fixture
def manager(mock_pw):
    return BrowserManager()


@pytest.fixture
def controller(manager):
    return CaptureController(manager, _fast_config())


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------


class TestCaptureSuccess:
    async def test_returns_jpeg(self, controller, mock_pw):
        result = await controller.capture("https://example.com", width=1280, height=900)
        assert result.success
        assert result.data == b"\xff\xd8\xff\xe0jpeg-bytes"
        assert result.content_type == JPEG_CONTENT_TYPE
        assert result.base64
        assert result.http_status == 200
        assert result.error_kind is None

    async def test_navigation_and_encoding_parameters(self, controller, mock_pw):
        _, _, page = mock_pw
        await controller.capture("https://example.com", timeout_ms=15000)
        page.goto.assert_awaited_once_with("https://example.com", wait_until="networkidle", timeout=15000)
        page.screenshot.assert_awaited_once_with(type="jpeg", quality=85, full_page=False)

    async def test_full_page_flag(self, controller, mock_pw):
        _, _, page = mock_pw
        await controller.capture("https://example.com", full_page=True)
        assert page.screenshot.call_args.kwargs["full_page"] is True

    async def test_viewport_forwarded(self, controller, mock_pw):
        _, browser, _ = mock_pw
        await controller.capture("https://example.com", width=390, height=844)
        assert browser.new_context.call_args.kwargs["viewport"] == {"width": 390, "height": 844}

    async def test_suppression_report_attached(self, controller):
        result = await controller.capture("https://example.com")
        assert result.suppression_applied
        assert result.suppression.hidden == 4
        assert result.suppression.closed == 1
        assert result.warnings == ()

    async def test_rules_sent_to_page(self, manager, mock_pw):
        _, _, page = mock_pw
        rules = OverlayRules(version="unit")
        await CaptureController(manager, _fast_config(), rules).capture("https://example.com")
        assert page.evaluate.call_args.args[1]["version"] == "unit"

    async def test_suppression_can_be_disabled(self, manager, mock_pw):
        _, _, page = mock_pw
        result = await CaptureController(manager, _fast_config(suppress_overlays=False)).capture("https://example.com")
        assert result.success
        page.evaluate.assert_not_called()
        assert not result.suppression_applied

    async def test_timings_recorded(self, controller):
        result = await controller.capture("https://example.com")
        assert {"session", "navigation", "settle", "suppression", "rasterize"} <= set(result.timings)

    async def test_http_error_status_still_captured(self, manager, mock_pw):
        _, _, page = mock_pw
        page.goto.return_value.status = 404
        result = await CaptureController(manager, _fast_config()).capture("https://example.com/missing")
        assert result.success
        assert result.http_status == 404

    async def test_no_response_object(self, controller, mock_pw):
        _, _, page = mock_pw
        page.goto.return_value = None
        result = await controller.capture("https://example.com")
        assert result.success
        assert result.http_status is None

    async def test_context_released(self, controller, manager):
        await controller.capture("https://example.com")
        assert manager.contexts_opened == manager.contexts_closed == 1

    async def test_browser_reused_across_captures(self, controller, manager):
        for _ in range(3):
            assert (await controller.capture("https://example.com")).success
        assert manager.launch_count == 1


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestCaptureValidation:
    @pytest.mark.parametrize("url", [None, "", "   "])
    async def test_missing_url_rejected_before_launch(self, controller, mock_pw, url):
        pw, _, _ = mock_pw
        with pytest.raises(InvalidRequest, match="URL parameter is required"):
            await controller.capture(url)
        pw.chromium.launch.assert_not_called()

    async def test_relative_url_rejected(self, controller):
        with pytest.raises(InvalidRequest, match="absolute"):
            await controller.capture("example.com/page")

    async def test_bad_width_rejected(self, controller, manager):
        with pytest.raises(InvalidRequest) as exc_info:
            await controller.capture("https://example.com", width=0)
        assert exc_info.value.field == "width"
        assert manager.contexts_opened == 0

    async def test_private_target_rejected_by_default(self, controller):
        with pytest.raises(InvalidRequest, match="private"):
            await controller.capture("http://192.168.0.10/")

    async def test_private_target_allowed_with_allow_local(self, manager):
        result = await CaptureController(manager, _fast_config(allow_local=True)).capture("http://127.0.0.1:8080/")
        assert result.success

    async def test_hostname_resolving_to_private_ip_rejected_before_launch(self, controller, mock_pw, monkeypatch):
        pw, _, _ = mock_pw

        async def _resolve(_hostname):
            return ["10.1.2.3"]

        monkeypatch.setattr("cleancapture.validation._resolve_dns", _resolve)
        with pytest.raises(InvalidRequest, match="resolves to private IP"):
            await controller.capture("https://rebind.example/")
        pw.chromium.launch.assert_not_called()

    async def test_decimal_metadata_ip_rejected(self, manager):
        with pytest.raises(InvalidRequest, match="cloud metadata"):
            await CaptureController(manager, _fast_config(allow_local=True)).capture("http://2852039166/")


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestNavigationFailure:
    async def test_timeout(self, controller, manager, mock_pw):
        _, _, page = mock_pw
        page.goto.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded.")
        result = await controller.capture("https://slow.example.com")
        assert not result.success
        assert result.error_kind is ErrorKind.NAVIGATION_FAILED
        assert "timed out" in result.message
        assert manager.contexts_opened == manager.contexts_closed == 1

    async def test_dns_failure_message(self, controller, mock_pw):
        _, _, page = mock_pw
        page.goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://nope.invalid/")
        result = await controller.capture("https://nope.invalid/")
        assert result.error_kind is ErrorKind.NAVIGATION_FAILED
        assert result.message == "Could not resolve domain name 'nope.invalid'"

    async def test_session_usable_after_navigation_failure(self, controller, manager, mock_pw):
        _, _, page = mock_pw
        page.goto.side_effect = [PlaywrightError("net::ERR_CONNECTION_REFUSED at https://down.example/"), None]
        first = await controller.capture("https://down.example/")
        second = await controller.capture("https://example.com")
        assert first.error_kind is ErrorKind.NAVIGATION_FAILED
        assert second.success
        assert manager.launch_count == 1
        assert manager.contexts_opened == manager.contexts_closed == 2

    async def test_browser_death_invalidates_session(self, controller, manager, mock_pw):
        pw, browser, page = mock_pw
        fresh, _ = make_mock_browser(page)
        pw.chromium.launch = AsyncMock(side_effect=[browser, fresh])
        page.goto.side_effect = [PlaywrightError("Target page, context or browser has been closed"), None]

        first = await controller.capture("https://example.com")
        assert first.error_kind is ErrorKind.SESSION_UNAVAILABLE

        second = await controller.capture("https://example.com")
        assert second.success
        assert manager.launch_count == 2

    async def test_late_death_error_spares_relaunched_browser(self, controller, manager, mock_pw):
        pw, old, page = mock_pw
        fresh, _ = make_mock_browser(page)
        pw.chromium.launch = AsyncMock(side_effect=[old, fresh])

        async def _old_browser_dies(*_args, **_kwargs):
            old.is_connected.return_value = False
            assert await manager.acquire() is fresh  # another request relaunched meanwhile
            raise PlaywrightError("Target page, context or browser has been closed")

        page.goto.side_effect = _old_browser_dies
        result = await controller.capture("https://example.com")

        assert result.error_kind is ErrorKind.SESSION_UNAVAILABLE
        fresh.close.assert_not_awaited()
        assert manager.health().browser_connected
        assert manager.launch_count == 2

    async def test_launch_failure_is_session_unavailable(self, controller, mock_pw):
        pw, _, _ = mock_pw
        pw.chromium.launch = AsyncMock(side_effect=RuntimeError("no display"))
        result = await controller.capture("https://example.com")
        assert result.error_kind is ErrorKind.SESSION_UNAVAILABLE


class TestSuppressionFault:
    async def test_fault_is_non_fatal(self, controller, mock_pw):
        _, _, page = mock_pw
        page.evaluate.side_effect = RuntimeError("Execution context was destroyed")
        result = await controller.capture("https://example.com")
        assert result.success
        assert result.data
        assert not result.suppression_applied
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("SuppressionFault:")

    async def test_in_page_error_is_non_fatal(self, controller, mock_pw):
        _, _, page = mock_pw
        page.evaluate.return_value = {"ok": False, "error": "boom"}
        result = await controller.capture("https://example.com")
        assert result.success
        assert "boom" in result.warnings[0]


class TestRasterizeFailure:
    async def test_screenshot_error(self, controller, manager, mock_pw):
        _, _, page = mock_pw
        page.screenshot.side_effect = PlaywrightError("Protocol error (Page.captureScreenshot)")
        result = await controller.capture("https://example.com")
        assert result.error_kind is ErrorKind.CAPTURE_FAULT
        assert manager.contexts_opened == manager.contexts_closed == 1

    async def test_empty_screenshot(self, controller, mock_pw):
        _, _, page = mock_pw
        page.screenshot.return_value = b""
        result = await controller.capture("https://example.com")
        assert result.error_kind is ErrorKind.CAPTURE_FAULT
        assert "no image data" in result.message

    async def test_oversized_screenshot(self, manager, mock_pw):
        result = await CaptureController(manager, _fast_config(max_image_bytes=4)).capture("https://example.com")
        assert result.error_kind is ErrorKind.CAPTURE_FAULT
        assert "too large" in result.message

    async def test_unexpected_exception_becomes_capture_fault(self, controller, mock_pw):
        _, _, page = mock_pw
        page.goto.side_effect = ValueError("weird")
        result = await controller.capture("https://example.com")
        assert result.error_kind is ErrorKind.CAPTURE_FAULT
        assert "weird" in result.message


class TestDeadline:
    async def test_deadline_covers_every_budget(self):
        config = CaptureConfig()
        assert config.deadline_seconds(30000) == pytest.approx(
            (30000 + 2000 + 500 + 10000 + 15000 + 5000) / 1000
        )

    async def test_stalled_navigation(self, manager, mock_pw):
        _, _, page = mock_pw

        async def _hang(*_args, **_kwargs):
            await asyncio.sleep(10)

        page.goto.side_effect = _hang
        config = _fast_config()
        config.deadline_seconds = lambda _timeout_ms: 0.05
        result = await CaptureController(manager, config).capture("https://example.com")
        assert result.error_kind is ErrorKind.NAVIGATION_FAILED
        assert "navigation" in result.message
        assert manager.contexts_opened == manager.contexts_closed == 1

    async def test_stalled_rasterize(self, manager, mock_pw):
        _, _, page = mock_pw

        async def _hang(*_args, **_kwargs):
            await asyncio.sleep(10)

        page.screenshot.side_effect = _hang
        config = _fast_config()
        config.deadline_seconds = lambda _timeout_ms: 0.05
        result = await CaptureController(manager, config).capture("https://example.com")
        assert result.error_kind is ErrorKind.CAPTURE_FAULT
        assert "rasterize" in result.message
        assert manager.contexts_opened == manager.contexts_closed == 1

    async def test_stalled_browser_launch_is_session_unavailable(self, manager, mock_pw):
        pw, _, _ = mock_pw

        async def _hang(*_args, **_kwargs):
            await asyncio.sleep(10)

        pw.chromium.launch = AsyncMock(side_effect=_hang)
        config = _fast_config()
        config.deadline_seconds = lambda _timeout_ms: 0.05
        result = await CaptureController(manager, config).capture("https://example.com")
        assert result.error_kind is ErrorKind.SESSION_UNAVAILABLE
        assert "'session' stage" in result.message
        assert problem_from_result(result).status == 503
        assert manager.contexts_opened == 0
