# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge. HTTP service: JSONRenderer, CLI/stdio: ConsoleRenderer.

Leaf module — no cleancapture imports. Safe to call early in startup.
"""

from __future__ import annotations

import logging
import sys

import structlog

# Chatty third-party loggers capped at WARNING unless running at DEBUG.
_NOISY_LOGGERS = ("asyncio", "uvicorn.access", "httpx", "mcp.server.lowlevel.server")


def configure(*, json_output: bool = False, level: str = "INFO") -> None:
    """Configure structlog with stdlib bridge.

    Args:
        json_output: True for JSON lines (HTTP service), False for human-readable output.
        level: Root logger level name (default INFO). Unknown names fall back to INFO.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    if root_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def bind_request(request_id: str, **fields: object) -> None:
    """Bind per-capture fields into the structlog context for correlation."""
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)


def clear_request() -> None:
    """Drop per-capture context bound by :func:`bind_request`."""
    structlog.contextvars.clear_contextvars()
