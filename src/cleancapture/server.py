# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CleanCapture service.

HTTP routes (Starlette, served by uvicorn):
- GET /screenshot: capture a page with overlays suppressed (base64 JSON or raw JPEG)
- GET /health: liveness, never touches the browser
- GET /ready: browser manager snapshot, 503 while draining
- GET /: service descriptor

MCP tool:
- capture_screenshot: same pipeline, returns the JPEG as image content

Supports HTTP (default) and STDIO transports. All logging goes to stderr.
"""

from __future__ import annotations

import argparse
import functools
import logging
import os
import sys
import time
from contextlib import suppress
from datetime import UTC, datetime
from typing import Annotated

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp import Image as McpImage
from mcp.types import ToolAnnotations
from pydantic import Field

from . import __version__
from .browser_manager import DEFAULT_ACCEPT_LANGUAGE, DEFAULT_DRAIN_TIMEOUT, BrowserConfig, BrowserManager
from .capture import DEFAULT_HEIGHT, DEFAULT_TIMEOUT_MS, DEFAULT_WIDTH, CaptureConfig, CaptureController
from .errors import InvalidRequest
from .problem_details import from_draining, from_exception, from_result
from .validation import (
    MAX_VIEWPORT_DIMENSION,
    parse_bool_param,
    parse_int_param,
    validate_capture_request,
    validate_resolved_url,
)

# Logging configured in main() via logging_config.configure()
logger = logging.getLogger("cleancapture.server")

DEFAULT_PORT = 3000

IMAGE_FORMAT_ALIASES = frozenset({"image", "binary", "binary-image"})
SUPPORTED_FORMATS = ("base64", "image", "binary", "binary-image")

mcp = FastMCP(
    name="cleancapture",
    instructions=(
        "Overlay-free web page screenshots. "
        "Use capture_screenshot with an absolute http(s) URL; popups, cookie banners "
        "and floating widgets are hidden before the JPEG is taken. "
        "Users are responsible for complying with target website terms of service and applicable laws."
    ),
)

# ── Server state ─────────────────────────────────────────────────────

_transport_mode: str = "stdio"
_draining: bool = False  # SIGTERM received → /ready and /screenshot return 503
_browser_config = BrowserConfig()
_capture_config = CaptureConfig()
_manager: BrowserManager | None = None
_controller: CaptureController | None = None


async def _get_controller() -> CaptureController:
    """Return the process-wide controller, creating it on first use.

    Creating the controller does not launch the browser; that happens on the
    first capture.
    """
    global _manager, _controller
    if _controller is None:
        if _manager is None:
            _manager = BrowserManager(_browser_config)
        _controller = CaptureController(_manager, _capture_config)
    return _controller


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


# ── Routes ───────────────────────────────────────────────────────────


@mcp.custom_route("/", methods=["GET"])
async def _index(request):
    from starlette.responses import JSONResponse

    return JSONResponse(
        {
            "service": "CleanCapture Screenshot Service",
            "version": __version__,
            "endpoints": {
                "/screenshot": {
                    "method": "GET",
                    "params": {
                        "url": "Target URL (required)",
                        "width": f"Viewport width (default: {DEFAULT_WIDTH})",
                        "height": f"Viewport height (default: {DEFAULT_HEIGHT})",
                        "format": "base64 | image (default: base64)",
                        "fullPage": "true | false (default: false)",
                        "timeout": f"Navigation timeout in ms (default: {_capture_config.navigation_timeout_ms})",
                    },
                    "example": "/screenshot?url=https://example.com&width=1280&height=900",
                },
                "/health": {"method": "GET", "description": "Liveness check"},
                "/ready": {"method": "GET", "description": "Readiness check"},
            },
        }
    )


@mcp.custom_route("/health", methods=["GET"])
async def _health_check(request):
    from starlette.responses import JSONResponse

    return JSONResponse({"status": "ok", "timestamp": _now_iso(), "transport": _transport_mode})


@mcp.custom_route("/ready", methods=["GET"])
async def _readiness_check(request):
    """Readiness probe. Drain mode aware; an unlaunched browser still counts as ready."""
    from starlette.responses import JSONResponse

    if _draining:
        return JSONResponse({"status": "draining", "transport": _transport_mode}, status_code=503)
    if _manager is None:
        return JSONResponse({"status": "ready", "transport": _transport_mode, "browser": {"launched": False}})
    h = _manager.health()
    ready = not h.closed
    return JSONResponse(
        {
            "status": "ready" if ready else "not_ready",
            "transport": _transport_mode,
            "browser": {
                "launched": h.launch_count > 0,
                "connected": h.browser_connected,
                "activeContexts": h.active_contexts,
                "launchCount": h.launch_count,
            },
        },
        status_code=200 if ready else 503,
    )


@mcp.custom_route("/screenshot", methods=["GET"])
async def _screenshot(request):
    from starlette.responses import JSONResponse, Response

    instance = request.url.path
    if _draining:
        return from_draining(instance=instance).to_response()

    params = request.query_params
    try:
        width = parse_int_param(params.get("width"), "width", DEFAULT_WIDTH)
        height = parse_int_param(params.get("height"), "height", DEFAULT_HEIGHT)
        timeout_ms = parse_int_param(params.get("timeout"), "timeout", _capture_config.navigation_timeout_ms)
        full_page = parse_bool_param(params.get("fullPage"), "fullPage")
        fmt = (params.get("format") or "base64").strip().lower()
        if fmt not in SUPPORTED_FORMATS:
            raise InvalidRequest(f"format must be one of: {', '.join(SUPPORTED_FORMATS)}", field="format")
        url = validate_capture_request(
            params.get("url"),
            width,
            height,
            timeout_ms,
            allow_local=_capture_config.allow_local,
        )
        url = await validate_resolved_url(url, allow_local=_capture_config.allow_local)
    except InvalidRequest as exc:
        logger.info("Rejected capture request: %s", exc)
        return from_exception(exc, instance=instance).to_response()

    try:
        controller = await _get_controller()
        result = await controller.capture(
            url,
            width=width,
            height=height,
            full_page=full_page,
            timeout_ms=timeout_ms,
        )
    except InvalidRequest as exc:
        return from_exception(exc, instance=instance).to_response()
    except Exception as exc:
        logger.error("Capture endpoint error: %s", exc, exc_info=True)
        return from_exception(exc, instance=instance).to_response()

    if not result.success:
        return from_result(result, instance=instance).to_response()

    if fmt in IMAGE_FORMAT_ALIASES:
        return Response(
            content=result.data,
            media_type=result.content_type,
            headers={"Cache-Control": "no-store", "Content-Length": str(len(result.data))},
        )

    body = {
        "success": True,
        "screenshot": result.base64,
        "contentType": result.content_type,
        "suppressionApplied": result.suppression_applied,
    }
    if result.warnings:
        body["warnings"] = list(result.warnings)
    return JSONResponse(body, headers={"Cache-Control": "no-store"})


# ── MCP tool ─────────────────────────────────────────────────────────


@mcp.tool(annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=True))
async def capture_screenshot(
    url: Annotated[str, Field(description="Absolute http(s) URL of the page to capture")],
    width: Annotated[int, Field(ge=1, le=MAX_VIEWPORT_DIMENSION, description="Viewport width")] = DEFAULT_WIDTH,
    height: Annotated[int, Field(ge=1, le=MAX_VIEWPORT_DIMENSION, description="Viewport height")] = DEFAULT_HEIGHT,
    full_page: Annotated[bool, Field(description="Capture the full scrollable page")] = False,
) -> list | str:
    """Take an overlay-free JPEG screenshot of a web page.

    Popups, cookie/consent banners, chat widgets and other floating overlays
    are hidden before capture; site navigation bars are kept.
    """
    if _draining:
        return from_draining().to_tool_text()
    try:
        controller = await _get_controller()
        result = await controller.capture(url, width=width, height=height, full_page=full_page)
    except Exception as exc:
        if not isinstance(exc, InvalidRequest):
            logger.error("capture_screenshot failed: %s", exc, exc_info=True)
        return from_exception(exc).to_tool_text()

    if not result.success:
        return from_result(result).to_tool_text()

    summary = f"Screenshot of {result.url} captured ({result})"
    if result.warnings:
        summary += f". Warning: {'; '.join(result.warnings)}"
    return [McpImage(data=result.data, format="jpeg"), summary]


# ── Configuration ────────────────────────────────────────────────────


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


def _parse_server_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI args and env vars for server configuration.

    Returns:
        argparse.Namespace with attributes: transport, host, port, cors_origin,
        drain_timeout, allow_local, navigation_timeout_ms, accept_language,
        log_level, no_headless.
    """
    parser = argparse.ArgumentParser(
        description="CleanCapture screenshot server",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "http"],
        default="http",
        help="Transport mode: http (default) or stdio for MCP clients",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="HTTP server host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"HTTP server port (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--cors-origin",
        action="append",
        default=None,
        help="Allowed CORS origin (repeatable). Required for browser cross-origin access.",
    )
    parser.add_argument(
        "--drain-timeout",
        type=int,
        default=int(DEFAULT_DRAIN_TIMEOUT),
        help="Graceful shutdown drain timeout seconds (default: 30)",
    )
    parser.add_argument(
        "--allow-local",
        action="store_true",
        default=False,
        help="Allow localhost and private IP targets for local development",
    )
    parser.add_argument(
        "--navigation-timeout-ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help=f"Default navigation timeout in ms (default: {DEFAULT_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--accept-language",
        default=DEFAULT_ACCEPT_LANGUAGE,
        help=f"Accept-Language header sent to targets (default: {DEFAULT_ACCEPT_LANGUAGE})",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--no-headless",
        action="store_true",
        default=False,
        help="Show the browser window (debugging)",
    )
    args, _ = parser.parse_known_args(argv)

    # Env var overrides
    env_transport = os.environ.get("CLEANCAPTURE_TRANSPORT", "").strip().lower()
    if env_transport in ("stdio", "http"):
        args.transport = env_transport

    env_host = os.environ.get("CLEANCAPTURE_HOST", "").strip()
    if env_host:
        args.host = env_host

    # CLEANCAPTURE_PORT wins over the platform-provided PORT
    for name in ("PORT", "CLEANCAPTURE_PORT"):
        env_port = os.environ.get(name, "").strip()
        if env_port:
            with suppress(ValueError):
                args.port = int(env_port)

    env_cors = os.environ.get("CLEANCAPTURE_CORS_ORIGIN", "").strip()
    if env_cors and args.cors_origin is None:
        args.cors_origin = [o.strip() for o in env_cors.split(",") if o.strip()]

    env_drain = os.environ.get("CLEANCAPTURE_DRAIN_TIMEOUT", "").strip()
    if env_drain:
        with suppress(ValueError):
            args.drain_timeout = int(env_drain)

    args.allow_local = args.allow_local or _env_flag("CLEANCAPTURE_ALLOW_LOCAL")

    env_nav = os.environ.get("CLEANCAPTURE_NAVIGATION_TIMEOUT_MS", "").strip()
    if env_nav:
        with suppress(ValueError):
            args.navigation_timeout_ms = int(env_nav)

    env_lang = os.environ.get("CLEANCAPTURE_ACCEPT_LANGUAGE", "").strip()
    if env_lang:
        args.accept_language = env_lang

    env_level = os.environ.get("CLEANCAPTURE_LOG_LEVEL", "").strip()
    if env_level:
        args.log_level = env_level

    args.no_headless = args.no_headless or _env_flag("CLEANCAPTURE_NO_HEADLESS")

    return args


def _apply_config(args: argparse.Namespace) -> None:
    """Install browser/capture configuration from parsed arguments."""
    global _browser_config, _capture_config, _manager, _controller
    _browser_config = BrowserConfig(headless=not args.no_headless)
    _capture_config = CaptureConfig(
        navigation_timeout_ms=args.navigation_timeout_ms,
        accept_language=args.accept_language,
        allow_local=args.allow_local,
    )
    _manager = None
    _controller = None


def build_http_app(cors_origins: list[str] | None = None):
    """Starlette app for the HTTP transport, CORS-wrapped when origins are given."""
    app = mcp.streamable_http_app()
    if cors_origins:
        from starlette.middleware.cors import CORSMiddleware

        app = CORSMiddleware(
            app,
            allow_origins=cors_origins,
            allow_methods=["GET"],
            allow_headers=["*"],
        )
    return app


# ── Lifecycle ────────────────────────────────────────────────────────


def _remaining_drain(drain_timeout: float, drain_started: float | None) -> float:
    """Drain budget left for the browser manager after uvicorn's graceful shutdown."""
    if drain_started is None:
        return drain_timeout
    return max(0.0, drain_timeout - (time.monotonic() - drain_started))


async def _run_http_server(
    host: str,
    port: int,
    *,
    cors_origins: list[str] | None = None,
    drain_timeout: int = int(DEFAULT_DRAIN_TIMEOUT),
) -> None:
    """Run the HTTP service with one BrowserManager for the whole process."""
    global _manager, _controller, _draining

    drain_started: float | None = None
    await _get_controller()
    logger.info("HTTP mode: browser manager ready (lazy launch)")
    try:
        import uvicorn

        config = uvicorn.Config(
            build_http_app(cors_origins),
            host=host,
            port=port,
            log_level="info",
            timeout_graceful_shutdown=drain_timeout,
        )
        server = uvicorn.Server(config)

        # Wrap uvicorn's handle_exit to set the drain flag before shutdown.
        # capture_signals() registers signal.signal(sig, self.handle_exit),
        # so the instance override takes priority.
        _original_handle_exit = server.handle_exit

        def _drain_then_exit(sig: int, frame) -> None:
            nonlocal drain_started
            global _draining
            _draining = True
            if drain_started is None:
                drain_started = time.monotonic()
            logger.info("Shutdown signal (sig=%d), drain mode (timeout=%ds)", sig, drain_timeout)
            _original_handle_exit(sig, frame)

        server.handle_exit = _drain_then_exit  # type: ignore[assignment]

        await server.serve()
    finally:
        _draining = True
        if _manager is not None:
            await _manager.shutdown(_remaining_drain(drain_timeout, drain_started))
        _manager = None
        _controller = None
        _draining = False
        logger.info("HTTP mode: shutdown complete")


async def _run_stdio_server(drain_timeout: int = int(DEFAULT_DRAIN_TIMEOUT)) -> None:
    global _manager, _controller

    await _get_controller()
    try:
        await mcp.run_stdio_async()
    finally:
        if _manager is not None:
            await _manager.shutdown(drain_timeout)
        _manager = None
        _controller = None
        logger.info("stdio mode: shutdown complete")


def main(argv: list[str] | None = None):
    """Entry point for the CleanCapture server."""
    global _transport_mode

    args = _parse_server_args(argv if argv is not None else sys.argv[1:])
    _transport_mode = args.transport

    # Configure structlog BEFORE any log output
    from .logging_config import configure as configure_logging

    configure_logging(json_output=(_transport_mode == "http"), level=args.log_level)
    _apply_config(args)

    if args.allow_local:
        logger.warning(
            "SECURITY: Local network access enabled (--allow-local). "
            "localhost and private IPs are accessible. Cloud metadata endpoints remain blocked."
        )

    logger.info("LEGAL: Users are responsible for complying with target website terms of service and applicable laws.")

    import anyio

    if _transport_mode == "stdio":
        logger.info("Starting CleanCapture MCP server (stdio, allow_local=%s)", args.allow_local)
        anyio.run(functools.partial(_run_stdio_server, args.drain_timeout))
        return

    if args.cors_origin and "*" in args.cors_origin:
        logger.error("CORS origin '*' is forbidden for security reasons")
        sys.exit(1)

    logger.info("Starting CleanCapture server (http, host=%s, port=%d)", args.host, args.port)
    runner = functools.partial(
        _run_http_server,
        args.host,
        args.port,
        cors_origins=args.cors_origin,
        drain_timeout=args.drain_timeout,
    )
    anyio.run(runner)


if __name__ == "__main__":
    main()
