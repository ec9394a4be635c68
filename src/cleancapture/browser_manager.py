# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""BrowserManager — one shared Chromium process, one BrowserContext per capture.

The browser is launched lazily on first use. Concurrent first callers are
coalesced behind ``_launch_lock`` so exactly one launch happens; everybody
else waits for and reuses that handle. A disconnected or invalidated browser
is relaunched on the next acquisition.

Page contexts are handed out through an async context manager and are always
closed on exit::

    manager = BrowserManager(BrowserConfig())
    async with manager.page_context(PageOptions(width=1280, height=900)) as page:
        await page.goto("https://example.com")
    await manager.shutdown()

Shutdown is explicit about in-flight captures: new work is refused
immediately, running captures get ``drain_timeout`` seconds to finish, and
whatever is still open after that has its context force-closed before the
browser goes down.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from .errors import SessionUnavailable

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"
DEFAULT_LOCALE = "en-US"

DEFAULT_DRAIN_TIMEOUT = 30.0

_BROWSER_DEAD_PATTERNS = (
    "target closed",
    "target page",
    "browser has been closed",
    "connection closed",
    "browser disconnected",
)


def is_browser_dead_error(exc: BaseException) -> bool:
    """Detect browser crash/disconnect errors."""
    msg = str(exc).lower()
    return any(p in msg for p in _BROWSER_DEAD_PATTERNS)


@dataclass
class BrowserConfig:
    """Browser launch configuration."""

    headless: bool = True
    no_sandbox: bool = True  # container deployments run Chromium as root
    locale: str = DEFAULT_LOCALE
    auto_install: bool = True
    launch_timeout_ms: int = 30000


@dataclass(frozen=True, slots=True)
class PageOptions:
    """Per-capture page context settings."""

    width: int = 1280
    height: int = 900
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    locale: str = DEFAULT_LOCALE


@dataclass(frozen=True, slots=True)
class ManagerHealth:
    """Immutable snapshot of manager state for readiness probes."""

    browser_connected: bool
    active_contexts: int
    launch_count: int
    closed: bool


def chromium_launch_args(config: BrowserConfig) -> list[str]:
    """Return hardened Chromium launch arguments."""
    args = [
        f"--lang={config.locale}",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--disable-accelerated-2d-canvas",
        "--hide-scrollbars",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--no-first-run",
        "--disable-breakpad",
        "--no-pings",
        "--disable-component-update",
        "--deny-permission-prompts",
        "--noerrdialogs",
    ]
    if config.no_sandbox:
        args += ["--no-sandbox", "--disable-setuid-sandbox"]
    return args


# ── Chromium auto-install ─────────────────────────────────────────

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds


async def _auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process.

    Returns True if install succeeded, False otherwise. A cancelled install
    kills the child process and leaves the next caller free to retry.
    """
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Chromium not found, running 'playwright install chromium'")
    proc: asyncio.subprocess.Process | None = None
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
        if proc.returncode == 0:
            logger.info("Chromium installed successfully")
            return True
        logger.warning(
            "playwright install chromium failed (rc=%d): %s",
            proc.returncode,
            stderr.decode(errors="replace")[:500],
        )
        return False
    except asyncio.CancelledError:
        _chromium_install_attempted = False
        logger.warning("Chromium install cancelled")
        raise
    except TimeoutError:
        logger.warning("Chromium install timed out after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    except Exception:
        logger.warning("Chromium auto-install failed", exc_info=True)
        return False
    finally:
        if proc is not None and proc.returncode is None:
            with suppress(ProcessLookupError):
                proc.kill()
            with suppress(Exception):
                await asyncio.wait_for(proc.wait(), timeout=5)


class BrowserManager:
    """Owns the process-wide browser; hands out isolated page contexts."""

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self.config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._launch_lock = asyncio.Lock()
        self._contexts: set[BrowserContext] = set()
        self._page_browsers: dict[Page, Browser] = {}
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self.launch_count = 0
        self.contexts_opened = 0
        self.contexts_closed = 0

    # ── Acquisition ──────────────────────────────────────────────────

    async def acquire(self) -> Browser:
        """Return the live browser, launching it if needed.

        Raises:
            SessionUnavailable: manager shut down, or Chromium failed to start.
        """
        self._ensure_open()
        browser = self._browser
        if browser is not None and browser.is_connected():
            return browser

        async with self._launch_lock:
            self._ensure_open()
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None:
                logger.warning("Browser disconnected, relaunching")
                await self._close_browser()
            self._browser = await self._launch()
            return self._browser

    async def invalidate(self, browser: Browser) -> None:
        """Drop a dead browser so the next acquisition relaunches.

        A stale *browser* handle (already replaced) is ignored, so a late
        error from a crashed browser never closes its replacement.
        """
        async with self._launch_lock:
            if self._browser is None or browser is not self._browser:
                return
            logger.warning("Invalidating shared browser (launch #%d)", self.launch_count)
            await self._close_browser()

    @asynccontextmanager
    async def page_context(self, options: PageOptions | None = None) -> AsyncIterator[Page]:
        """Yield a fresh page in its own BrowserContext, closed on every exit path."""
        self._ensure_open()
        opts = options or PageOptions()
        self._inflight += 1
        self._idle.clear()
        context: BrowserContext | None = None
        page: Page | None = None
        try:
            browser = await self.acquire()
            try:
                context = await browser.new_context(
                    viewport={"width": opts.width, "height": opts.height},
                    device_scale_factor=1,
                    user_agent=opts.user_agent,
                    locale=opts.locale,
                    extra_http_headers={"Accept-Language": opts.accept_language},
                    bypass_csp=True,
                    ignore_https_errors=True,
                    service_workers="block",
                    accept_downloads=False,
                    permissions=[],
                )
                self._contexts.add(context)
                self.contexts_opened += 1
                page = await context.new_page()
                self._page_browsers[page] = browser
            except Exception as exc:
                if is_browser_dead_error(exc):
                    await self.invalidate(browser)
                raise SessionUnavailable(f"Could not open a page context: {exc}") from exc
            logger.debug("Page context opened (active=%d)", len(self._contexts))
            yield page
        finally:
            if page is not None:
                self._page_browsers.pop(page, None)
            if context is not None:
                self._contexts.discard(context)
                with suppress(Exception):
                    await context.close()
                self.contexts_closed += 1
                logger.debug("Page context closed (active=%d)", len(self._contexts))
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    # ── Monitoring ───────────────────────────────────────────────────

    def browser_for(self, page: Page) -> Browser | None:
        """Browser that *page* was opened on, while its context is still open."""
        return self._page_browsers.get(page)

    def health(self) -> ManagerHealth:
        return ManagerHealth(
            browser_connected=self._browser is not None and self._browser.is_connected(),
            active_contexts=len(self._contexts),
            launch_count=self.launch_count,
            closed=self._closed,
        )

    @property
    def inflight(self) -> int:
        return self._inflight

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Shutdown ─────────────────────────────────────────────────────

    async def shutdown(self, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT) -> None:
        """Refuse new work, drain in-flight captures, then close everything.

        Captures still running after *drain_timeout* seconds have their
        contexts force-closed; they fail with a structured result rather
        than racing the browser teardown.
        """
        if self._closed:
            return
        self._closed = True

        if self._inflight:
            logger.info("Draining %d in-flight capture(s) (timeout=%.0fs)", self._inflight, drain_timeout)
            try:
                async with asyncio.timeout(drain_timeout):
                    await self._idle.wait()
            except TimeoutError:
                logger.warning("Drain timeout: force-closing %d page context(s)", len(self._contexts))

        for context in list(self._contexts):
            with suppress(Exception):
                await context.close()
        self._contexts.clear()

        async with self._launch_lock:
            await self._close_browser()
            if self._playwright is not None:
                with suppress(Exception):
                    await self._playwright.stop()
                self._playwright = None
        logger.info(
            "BrowserManager shut down (launches=%d, contexts opened=%d closed=%d)",
            self.launch_count,
            self.contexts_opened,
            self.contexts_closed,
        )

    # ── Internal ─────────────────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionUnavailable("Browser manager is shut down")

    async def _launch(self) -> Browser:
        """Start Playwright (once) and launch Chromium. Caller holds _launch_lock."""
        try:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            browser = await self._launch_chromium()
        except SessionUnavailable:
            raise
        except Exception as exc:
            raise SessionUnavailable(f"Browser launch failed: {exc}") from exc
        self.launch_count += 1
        logger.info(
            "Browser launched (launch #%d, headless=%s)",
            self.launch_count,
            self.config.headless,
        )
        return browser

    async def _launch_chromium(self) -> Browser:
        """Launch Chromium, auto-installing on first 'executable not found' error."""
        args = chromium_launch_args(self.config)
        kwargs = {"headless": self.config.headless, "args": args, "timeout": self.config.launch_timeout_ms}
        try:
            return await self._playwright.chromium.launch(**kwargs)
        except Exception as exc:
            if "executable doesn't exist" not in str(exc).lower():
                raise
            if self.config.auto_install and await _auto_install_chromium():
                return await self._playwright.chromium.launch(**kwargs)
            raise SessionUnavailable(
                "Chromium is not installed and auto-install failed. Please run: playwright install chromium"
            ) from exc

    async def _close_browser(self) -> None:
        if self._browser is not None:
            with suppress(Exception):
                await self._browser.close()
            self._browser = None
