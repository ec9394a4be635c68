# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Page capture controller — one request, one page context, one JPEG.

Pipeline (strictly in order)::

    validate → session → navigation → settle → suppression → settle → rasterize

Only ``InvalidRequest`` escapes :meth:`CaptureController.capture`; every
later failure comes back as a failed ``CaptureResult``. A suppression fault
downgrades to a warning and the unsuppressed page is still captured.

The whole pipeline runs under one deadline: the navigation timeout plus both
settle delays, the suppression and rasterization budgets, and a fixed
overhead for context setup.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from . import JPEG_CONTENT_TYPE, CaptureResult, SuppressionReport
from .browser_manager import (
    DEFAULT_ACCEPT_LANGUAGE,
    DEFAULT_LOCALE,
    DEFAULT_USER_AGENT,
    BrowserManager,
    PageOptions,
    is_browser_dead_error,
)
from .errors import CaptureError, CaptureFault, ErrorKind, NavigationFailed, SessionUnavailable, SuppressionFault
from .logging_config import bind_request, clear_request
from .overlay_rules import DEFAULT_RULES, OverlayRules
from .overlay_suppressor import suppress_overlays
from .pipeline_timer import PipelineTimer
from .problem_details import classify_network_error
from .validation import validate_capture_request, validate_resolved_url

logger = logging.getLogger(__name__)

DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 900
DEFAULT_TIMEOUT_MS = 30000


@dataclass
class CaptureConfig:
    """Capture pipeline configuration."""

    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    locale: str = DEFAULT_LOCALE
    navigation_timeout_ms: int = DEFAULT_TIMEOUT_MS
    wait_until: str = "networkidle"
    settle_ms: int = 2000  # late-mounting banners / consent dialogs
    post_suppress_ms: int = 500  # let suppression mutations apply
    jpeg_quality: int = 85
    suppress_timeout_ms: int = 10000
    screenshot_timeout_ms: int = 15000
    deadline_overhead_ms: int = 5000
    max_image_bytes: int = 20 * 1024 * 1024
    allow_local: bool = False
    suppress_overlays: bool = True

    def deadline_seconds(self, timeout_ms: int) -> float:
        """Overall budget for one capture, given its navigation timeout."""
        total_ms = (
            timeout_ms
            + self.settle_ms
            + self.post_suppress_ms
            + self.suppress_timeout_ms
            + self.screenshot_timeout_ms
            + self.deadline_overhead_ms
        )
        return total_ms / 1000


class CaptureController:
    """Orchestrates captures against a shared :class:`BrowserManager`."""

    def __init__(
        self,
        manager: BrowserManager,
        config: CaptureConfig | None = None,
        rules: OverlayRules = DEFAULT_RULES,
    ) -> None:
        self.manager = manager
        self.config = config or CaptureConfig()
        self.rules = rules

    async def capture(
        self,
        url: str | None,
        *,
        width: int = DEFAULT_WIDTH,
        height: int = DEFAULT_HEIGHT,
        full_page: bool = False,
        timeout_ms: int | None = None,
    ) -> CaptureResult:
        """Capture *url* as a JPEG with overlays suppressed.

        Raises:
            InvalidRequest: bad input, raised before any browser work.
        """
        if timeout_ms is None:
            timeout_ms = self.config.navigation_timeout_ms
        url = validate_capture_request(url, width, height, timeout_ms, allow_local=self.config.allow_local)
        url = await validate_resolved_url(url, allow_local=self.config.allow_local)

        request_id = uuid.uuid4().hex[:12]
        bind_request(request_id, url=url)
        timer = PipelineTimer()
        try:
            async with asyncio.timeout(self.config.deadline_seconds(timeout_ms)):
                result = await self._run(url, width, height, full_page, timeout_ms, timer)
        except TimeoutError:
            report = timer.timeout_report()
            logger.error("Capture deadline exceeded: %s", report)
            timer.finalize()
            return CaptureResult.failure(
                url,
                report["error_kind"],
                f"Capture deadline exceeded during '{report['timed_out_at']}' stage. {report['hint']}",
                timings=timer.elapsed_per_stage(),
            )
        except CaptureError as exc:
            timer.finalize()
            log = logger.warning if isinstance(exc, NavigationFailed) else logger.error
            log("Capture failed (%s): %s", exc.kind, exc)
            return CaptureResult.failure(url, exc.kind, str(exc), timings=timer.elapsed_per_stage())
        except Exception as exc:
            timer.finalize()
            logger.error("Unexpected capture error: %s", exc, exc_info=True)
            return CaptureResult.failure(
                url,
                ErrorKind.CAPTURE_FAULT,
                f"Unexpected error: {exc}",
                timings=timer.elapsed_per_stage(),
            )
        finally:
            clear_request()

        logger.info(
            "Capture complete: %d bytes in %.0fms %s",
            len(result.data),
            sum(result.timings.values()),
            result.timings,
        )
        return result

    # ── Pipeline ─────────────────────────────────────────────────────

    async def _run(
        self,
        url: str,
        width: int,
        height: int,
        full_page: bool,
        timeout_ms: int,
        timer: PipelineTimer,
    ) -> CaptureResult:
        options = PageOptions(
            width=width,
            height=height,
            user_agent=self.config.user_agent,
            accept_language=self.config.accept_language,
            locale=self.config.locale,
        )
        warnings: list[str] = []
        report: SuppressionReport | None = None

        timer.stage("session")
        async with self.manager.page_context(options) as page:
            timer.stage("navigation")
            status = await self._navigate(page, url, timeout_ms)

            timer.stage("settle")
            await asyncio.sleep(self.config.settle_ms / 1000)

            if self.config.suppress_overlays:
                timer.stage("suppression")
                try:
                    report = await suppress_overlays(
                        page,
                        self.rules,
                        timeout=self.config.suppress_timeout_ms / 1000,
                    )
                except SuppressionFault as exc:
                    logger.warning("Capturing unsuppressed page: %s", exc)
                    warnings.append(f"{ErrorKind.SUPPRESSION_FAULT}: {exc}")
                await asyncio.sleep(self.config.post_suppress_ms / 1000)

            timer.stage("rasterize")
            data = await self._rasterize(page, full_page)
        timer.finalize()

        return CaptureResult(
            success=True,
            url=url,
            data=data,
            content_type=JPEG_CONTENT_TYPE,
            http_status=status,
            suppression=report,
            warnings=tuple(warnings),
            timings=timer.elapsed_per_stage(),
        )

    async def _navigate(self, page: Page, url: str, timeout_ms: int) -> int | None:
        try:
            response = await page.goto(url, wait_until=self.config.wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationFailed(
                f"Navigation timed out after {timeout_ms}ms",
                url=url,
                timed_out=True,
            ) from exc
        except PlaywrightError as exc:
            await self._raise_if_browser_dead(exc, page)
            classified = classify_network_error(str(exc))
            message = classified[1] if classified else f"Navigation failed: {exc}"
            raise NavigationFailed(message, url=url) from exc
        return response.status if response is not None else None

    async def _rasterize(self, page: Page, full_page: bool) -> bytes:
        try:
            data = await asyncio.wait_for(
                page.screenshot(type="jpeg", quality=self.config.jpeg_quality, full_page=full_page),
                timeout=self.config.screenshot_timeout_ms / 1000,
            )
        except TimeoutError as exc:
            raise CaptureFault(f"Screenshot timed out after {self.config.screenshot_timeout_ms}ms") from exc
        except Exception as exc:
            await self._raise_if_browser_dead(exc, page)
            raise CaptureFault(f"Screenshot failed: {exc}") from exc

        if not data:
            raise CaptureFault("Screenshot produced no image data")
        if len(data) > self.config.max_image_bytes:
            raise CaptureFault(
                f"Screenshot too large ({len(data):,} bytes, limit {self.config.max_image_bytes:,}). "
                "Use fullPage=false for a smaller capture."
            )
        return data

    async def _raise_if_browser_dead(self, exc: Exception, page: Page) -> None:
        """Session-level faults invalidate the browser *page* ran on, for lazy relaunch."""
        if is_browser_dead_error(exc):
            browser = self.manager.browser_for(page)
            if browser is not None:
                await self.manager.invalidate(browser)
            raise SessionUnavailable(f"Browser connection lost: {exc}") from exc
