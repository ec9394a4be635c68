# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""RFC 9457 Problem Details for the capture API.

Maps ``ErrorKind`` values and exceptions to structured problem objects.
Near-leaf dependency (stdlib + errors.py + starlette lazy) so any layer can
import it.

Key public API:

- ``ProblemType``   — error taxonomy with per-type status and title.
- ``ProblemDetail`` — frozen dataclass (→ JSON / Starlette response / CLI / tool text).
- ``sanitize_detail()`` — scrub secrets & paths from error messages.
- ``classify_network_error()`` — Chromium ``net::ERR_*`` → human message.
- Factories: ``from_exception``, ``from_result``, ``from_draining``.

Type URI namespace: ``https://cleancapture.dev/errors/{slug}``
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from .errors import CaptureError, ErrorKind, NavigationFailed

if TYPE_CHECKING:
    from . import CaptureResult

_ERROR_BASE = "https://cleancapture.dev/errors"

MAX_DETAIL_LENGTH = 200


class ProblemType(StrEnum):
    """Error taxonomy for the capture service."""

    INVALID_REQUEST = "invalid-request"
    SESSION_UNAVAILABLE = "session-unavailable"
    NAVIGATION_FAILED = "navigation-failed"
    NAVIGATION_TIMEOUT = "navigation-timeout"
    DNS_RESOLUTION_FAILED = "dns-resolution-failed"
    CAPTURE_FAULT = "capture-fault"
    SERVER_DRAINING = "server-draining"

    @property
    def uri(self) -> str:
        """Full type URI for RFC 9457 ``type`` field."""
        return f"{_ERROR_BASE}/{self.value}"


# Per-type metadata: (status, title, hint)
_TYPE_METADATA: dict[ProblemType, tuple[int, str, str]] = {
    ProblemType.INVALID_REQUEST: (400, "Invalid Request", "Provide an absolute http:// or https:// URL."),
    ProblemType.SESSION_UNAVAILABLE: (
        503,
        "Browser Unavailable",
        "Ensure Chromium is installed: playwright install chromium",
    ),
    ProblemType.NAVIGATION_FAILED: (502, "Navigation Failed", "Check that the site is reachable and retry."),
    ProblemType.NAVIGATION_TIMEOUT: (504, "Navigation Timed Out", "The page took too long to load. Retry later."),
    ProblemType.DNS_RESOLUTION_FAILED: (
        502,
        "DNS Resolution Failed",
        "Check the URL spelling and ensure the domain exists.",
    ),
    ProblemType.CAPTURE_FAULT: (500, "Capture Failed", "Retry, or use fullPage=false for very long pages."),
    ProblemType.SERVER_DRAINING: (503, "Server Draining", "The service is shutting down. Retry shortly."),
}

_KIND_TO_TYPE: dict[ErrorKind, ProblemType] = {
    ErrorKind.INVALID_REQUEST: ProblemType.INVALID_REQUEST,
    ErrorKind.SESSION_UNAVAILABLE: ProblemType.SESSION_UNAVAILABLE,
    ErrorKind.NAVIGATION_FAILED: ProblemType.NAVIGATION_FAILED,
    ErrorKind.SUPPRESSION_FAULT: ProblemType.CAPTURE_FAULT,
    ErrorKind.CAPTURE_FAULT: ProblemType.CAPTURE_FAULT,
}

# ── Secret sanitization patterns ─────────────────────────────────────

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Bearer\s+\S+"), "Bearer <redacted>"),
    (re.compile(r"Basic\s+[A-Za-z0-9+/=]{8,}"), "Basic <redacted>"),
    (
        re.compile(r"(?:API_KEY|SECRET|TOKEN|PASSWORD|CREDENTIAL)\s*[=:]\s*\S+", re.IGNORECASE),
        "<redacted>",
    ),
    (re.compile(r"://[^@\s/]+@"), "://<redacted>@"),
    (re.compile(r"([?&](?:token|key|sig|signature|access_token|auth)=)[^&\s]+", re.IGNORECASE), r"\1<redacted>"),
]

_PATH_PATTERN = re.compile(
    r"(/(?:Users|home|tmp|var|etc|opt|root|srv|proc|sys|usr|Library"
    r"|Applications|private|snap|mnt|media|nix)/[\w./-]+"
    r"|[A-Z]:\\[\w.\\-]+)"
)

# Playwright appends a multi-line "Call log:" to navigation errors.
_CALL_LOG_RE = re.compile(r"\s*=+\s*logs\s*=+.*|\s*Call log:.*", re.DOTALL)

# ── Chromium net::ERR_* classification ───────────────────────────────

_NET_ERR_RE = re.compile(r"net::ERR_(\w+)")
_HOSTNAME_RE = re.compile(r"https?://([^/:\s]+)")

_DNS_CODES = frozenset({"NAME_NOT_RESOLVED", "NAME_RESOLUTION_FAILED"})
_TIMED_OUT_CODES = frozenset({"CONNECTION_TIMED_OUT", "TIMED_OUT"})
_CONNECTION_CODES = frozenset(
    {
        "CONNECTION_REFUSED",
        "CONNECTION_CLOSED",
        "CONNECTION_RESET",
        "EMPTY_RESPONSE",
        "ADDRESS_UNREACHABLE",
        "INTERNET_DISCONNECTED",
    }
)


def classify_network_error(exc_message: str) -> tuple[ProblemType, str] | None:
    """Classify a Playwright network error message into a ProblemType + human message.

    Returns ``None`` if *exc_message* does not contain a ``net::ERR_*`` code.
    """
    m = _NET_ERR_RE.search(exc_message)
    if m is None:
        return None
    code = m.group(1)

    hm = _HOSTNAME_RE.search(exc_message)
    hostname = hm.group(1) if hm else ""

    if code in _DNS_CODES:
        host_part = f" '{hostname}'" if hostname else ""
        return ProblemType.DNS_RESOLUTION_FAILED, f"Could not resolve domain name{host_part}"
    if code in _TIMED_OUT_CODES:
        host_part = f" to '{hostname}'" if hostname else ""
        return ProblemType.NAVIGATION_TIMEOUT, f"Connection timed out{host_part}"
    if code in _CONNECTION_CODES:
        host_part = f" to '{hostname}'" if hostname else ""
        return ProblemType.NAVIGATION_FAILED, f"Connection failed{host_part}"
    if "CERT" in code or "SSL" in code:
        host_part = f" for '{hostname}'" if hostname else ""
        return ProblemType.NAVIGATION_FAILED, f"SSL/TLS error{host_part}"
    return ProblemType.NAVIGATION_FAILED, f"Navigation failed (net::ERR_{code})"


def sanitize_detail(text: str) -> str:
    """Scrub secrets, filesystem paths and Playwright call logs from *text*.

    Truncates to ``MAX_DETAIL_LENGTH`` characters.
    """
    text = _CALL_LOG_RE.sub("", text)
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    text = _PATH_PATTERN.sub("<path>", text)
    if len(text) > MAX_DETAIL_LENGTH:
        text = text[:MAX_DETAIL_LENGTH] + "..."
    return text


# Standard RFC 9457 fields that extensions must never shadow.
_STANDARD_FIELDS = frozenset({"type", "title", "status", "detail", "instance"})


@dataclass(frozen=True, slots=True)
class ProblemDetail:
    """RFC 9457 Problem Detail object.

    The capture API also requires ``success: false`` and ``error`` at the
    top level of every failure body; those ride along as extensions.
    """

    type: str = "about:blank"
    title: str = ""
    status: int = 500
    detail: str = ""
    instance: str = ""
    extensions: dict[str, Any] = field(default_factory=dict)
    hint: str = field(default="", repr=False)

    def to_dict(self) -> dict[str, Any]:
        """RFC 9457 JSON dict. Empty optional fields omitted, extensions merged at top level."""
        d: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.title:
            d["title"] = self.title
        if self.detail:
            d["detail"] = self.detail
        if self.instance:
            d["instance"] = self.instance
        for k, v in self.extensions.items():
            if k not in _STANDARD_FIELDS:
                d[k] = v
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_response(self):
        """Starlette ``JSONResponse`` with ``application/problem+json``."""
        from starlette.responses import JSONResponse

        headers = {"Cache-Control": "no-store", "Content-Language": "en"}
        if self.status == 503:
            headers["Retry-After"] = "5"
        return JSONResponse(
            content=self.to_dict(),
            status_code=self.status,
            media_type="application/problem+json",
            headers=headers,
        )

    def to_tool_text(self) -> str:
        """Single-line text for MCP tool responses."""
        if self.hint:
            return f"Error ({self.title or 'capture'}): {self.detail}. {self.hint}"
        return f"Error ({self.title or 'capture'}): {self.detail}"

    def to_cli_text(self) -> str:
        """Human-friendly CLI error message::

        Error: <detail>
        Hint: <hint>
        """
        lines = [f"Error: {self.detail}"]
        if self.hint:
            lines.append(f"Hint: {self.hint}")
        return "\n".join(lines)


def _build(problem_type: ProblemType, detail: str, kind: str, *, instance: str = "", **extra: Any) -> ProblemDetail:
    status, title, hint = _TYPE_METADATA[problem_type]
    detail = sanitize_detail(detail)
    ext: dict[str, Any] = {"success": False, "error": detail, "errorKind": kind}
    ext.update(extra)
    return ProblemDetail(
        type=problem_type.uri,
        title=title,
        status=status,
        detail=detail,
        instance=instance,
        extensions=ext,
        hint=hint,
    )


def _type_for(kind: ErrorKind, message: str, *, timed_out: bool = False) -> ProblemType:
    problem_type = _KIND_TO_TYPE[kind]
    if problem_type is ProblemType.NAVIGATION_FAILED:
        if timed_out:
            return ProblemType.NAVIGATION_TIMEOUT
        classified = classify_network_error(message)
        if classified is not None:
            return classified[0]
        if "timed out" in message.lower() or "deadline exceeded" in message.lower():
            return ProblemType.NAVIGATION_TIMEOUT
    return problem_type


def from_exception(exc: BaseException, *, instance: str = "") -> ProblemDetail:
    """Build a ProblemDetail from an exception.

    ``CaptureError`` subclasses map through their ``kind``; anything else is
    reported as a capture fault with a sanitised message.
    """
    if isinstance(exc, CaptureError):
        timed_out = isinstance(exc, NavigationFailed) and exc.timed_out
        extra: dict[str, Any] = {}
        field_name = getattr(exc, "field", "")
        if field_name:
            extra["field"] = field_name
        problem_type = _type_for(exc.kind, str(exc), timed_out=timed_out)
        return _build(problem_type, str(exc), str(exc.kind), instance=instance, **extra)
    return _build(ProblemType.CAPTURE_FAULT, str(exc) or type(exc).__name__, str(ErrorKind.CAPTURE_FAULT), instance=instance)


def from_result(result: CaptureResult, *, instance: str = "") -> ProblemDetail:
    """Build a ProblemDetail from a failed ``CaptureResult``."""
    if result.success or result.error_kind is None:
        raise ValueError("from_result() requires a failed CaptureResult")
    problem_type = _type_for(result.error_kind, result.message)
    return _build(problem_type, result.message, str(result.error_kind), instance=instance)


def from_draining(*, instance: str = "") -> ProblemDetail:
    return _build(
        ProblemType.SERVER_DRAINING,
        "Server is shutting down; new captures are not accepted.",
        str(ErrorKind.SESSION_UNAVAILABLE),
        instance=instance,
    )
