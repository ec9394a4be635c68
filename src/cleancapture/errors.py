# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CleanCapture exception hierarchy.

Every capture failure maps to exactly one ``ErrorKind``. Callers can catch
``CaptureError`` for any failure or a subclass for targeted handling; the
endpoint layer reads ``exc.kind`` to pick a response status.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable, serialisable failure categories."""

    INVALID_REQUEST = "InvalidRequest"
    SESSION_UNAVAILABLE = "SessionUnavailable"
    NAVIGATION_FAILED = "NavigationFailed"
    SUPPRESSION_FAULT = "SuppressionFault"
    CAPTURE_FAULT = "CaptureFault"


class CaptureError(Exception):
    """Base exception for all CleanCapture errors."""

    kind: ErrorKind = ErrorKind.CAPTURE_FAULT


class InvalidRequest(CaptureError):
    """Malformed or missing input, rejected before any browser work."""

    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, *, field: str = "") -> None:
        super().__init__(message)
        self.field = field


class SessionUnavailable(CaptureError):
    """The shared browser could not be launched or died mid-capture."""

    kind = ErrorKind.SESSION_UNAVAILABLE


class NavigationFailed(CaptureError):
    """Target unreachable, timed out, or otherwise not loadable."""

    kind = ErrorKind.NAVIGATION_FAILED

    def __init__(self, message: str, *, url: str = "", timed_out: bool = False) -> None:
        super().__init__(message)
        self.url = url
        self.timed_out = timed_out


class SuppressionFault(CaptureError):
    """In-page overlay suppression failed. Non-fatal for a capture."""

    kind = ErrorKind.SUPPRESSION_FAULT


class CaptureFault(CaptureError):
    """Rasterization failed (or the capture deadline expired) after load."""

    kind = ErrorKind.CAPTURE_FAULT
