# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CleanCapture: overlay-free screenshots of third-party web pages.

Renders a page in headless Chromium, hides popups, consent banners and
floating widgets while keeping site navigation, and returns a JPEG:
- CaptureResult: the immutable outcome of one capture request
- SuppressionReport: what the in-page overlay pass changed
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field

from .errors import ErrorKind

__version__ = "1.0.0"

JPEG_CONTENT_TYPE = "image/jpeg"


@dataclass(frozen=True, slots=True)
class SuppressionReport:
    """Counts reported back by one in-page suppression run."""

    scanned: int  # elements walked by the positional pass
    positional: int  # hidden by pass A (position + lexicon / z-index)
    selector: int  # hidden by pass B (selector + geometry)
    corner: int  # hidden by pass C (corner floating buttons)
    closed: int  # close controls activated
    rules_version: str = ""

    @property
    def hidden(self) -> int:
        return self.positional + self.selector + self.corner


@dataclass(frozen=True, slots=True)
class CaptureResult:
    """Outcome of a capture. Failures carry ``error_kind`` + ``message``."""

    success: bool
    url: str
    data: bytes = field(default=b"", repr=False)
    content_type: str = ""
    error_kind: ErrorKind | None = None
    message: str = ""
    http_status: int | None = None  # main document response status
    suppression: SuppressionReport | None = None
    warnings: tuple[str, ...] = ()  # degraded mode notices (e.g. suppression fault)
    timings: dict[str, float] = field(default_factory=dict)  # {stage: ms}

    @classmethod
    def failure(
        cls,
        url: str,
        kind: ErrorKind,
        message: str,
        *,
        timings: dict[str, float] | None = None,
    ) -> CaptureResult:
        return cls(
            success=False,
            url=url,
            error_kind=kind,
            message=message,
            timings=dict(timings or {}),
        )

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def suppression_applied(self) -> bool:
        """False when the page was captured without overlay suppression."""
        return self.suppression is not None

    def __str__(self) -> str:
        if not self.success:
            return f"capture failed ({self.error_kind}): {self.message}"
        parts = [f"{len(self.data)} bytes {self.content_type}"]
        if self.suppression is not None:
            parts.append(f"hidden={self.suppression.hidden} closed={self.suppression.closed}")
        if self.warnings:
            parts.append(f"warnings={len(self.warnings)}")
        return " ".join(parts)
