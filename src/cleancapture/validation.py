# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Capture request validation.

Runs before any browser resource is touched. Every rejection raises
``InvalidRequest`` naming the offending field.

Target URLs must be absolute http(s) URLs. Private and loopback addresses are
refused unless ``allow_local`` is set; cloud metadata endpoints are refused
unconditionally, since the renderer runs inside the service's network.
IP literals are normalised first (integer, hex and octal spellings), and
:func:`validate_resolved_url` also checks the addresses a hostname resolves to.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from urllib.parse import urlsplit

from .errors import InvalidRequest

logger = logging.getLogger(__name__)

ALLOWED_URL_SCHEMES = frozenset({"http", "https"})

MAX_URL_LENGTH = 4096
MAX_VIEWPORT_DIMENSION = 10_000
MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 120_000

# Cloud metadata is always blocked regardless of allow_local
_CLOUD_METADATA_HOSTS = frozenset({"metadata.google.internal", "169.254.169.254"})
_CLOUD_METADATA_NETWORKS = (ipaddress.ip_network("169.254.0.0/16"),)

_LOOPBACK_HOSTS = frozenset({"localhost", "localhost.localdomain"})

# Private/reserved ranges (RFC 1918, loopback, link-local, CGNAT, IPv4-mapped IPv6)
_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("::ffff:0:0/96"),
)


def _normalize_ip(hostname: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse *hostname* as an IP address in any form Chromium accepts.

    Covers dotted quads, bracketed IPv6, and the integer, hex and octal
    spellings (``2130706433``, ``0x7f000001``, ``0177.0.0.1``) that
    ``ipaddress`` alone does not recognise. Returns None for domain names.
    IPv4-mapped IPv6 addresses are unwrapped to their IPv4 form.
    """
    host = hostname.strip("[]").rstrip(".")
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        addr = _parse_numeric_ipv4(host)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def _parse_numeric_ipv4(host: str) -> ipaddress.IPv4Address | None:
    parts = host.split(".")
    if len(parts) > 4 or not all(parts):
        return None
    values: list[int] = []
    for part in parts:
        if not part.isalnum():
            return None
        try:
            if part[:2] in ("0x", "0X"):
                values.append(int(part[2:], 16))
            elif len(part) > 1 and part.startswith("0"):
                values.append(int(part, 8))
            else:
                values.append(int(part, 10))
        except ValueError:
            return None

    # a.b.c.d / a.b.c (c fills 16 bits) / a.b (b fills 24 bits) / a (32 bits)
    *head, tail = values
    if any(v > 0xFF for v in head) or tail >= 1 << (8 * (5 - len(values))):
        return None
    num = tail
    for i, v in enumerate(head):
        num |= v << (24 - 8 * i)
    return ipaddress.IPv4Address(num)


def _check_address(addr: ipaddress.IPv4Address | ipaddress.IPv6Address, hostname: str, *, allow_local: bool) -> None:
    if any(addr in net for net in _CLOUD_METADATA_NETWORKS):
        raise InvalidRequest(f"Access to cloud metadata IP '{hostname}' is blocked", field="url")
    if not allow_local and any(addr in net for net in _PRIVATE_NETWORKS):
        raise InvalidRequest(f"Access to private/reserved IP '{hostname}' is blocked", field="url")


def validate_url(url: str | None, *, allow_local: bool = False) -> str:
    """Return the stripped URL, or raise ``InvalidRequest``."""
    if url is None or not str(url).strip():
        raise InvalidRequest("URL parameter is required", field="url")
    url = str(url).strip()
    if len(url) > MAX_URL_LENGTH:
        raise InvalidRequest(f"URL exceeds {MAX_URL_LENGTH} characters", field="url")

    try:
        parsed = urlsplit(url)
        hostname = (parsed.hostname or "").lower()
    except ValueError:
        raise InvalidRequest("Invalid URL format", field="url") from None

    scheme = (parsed.scheme or "").lower()
    if scheme not in ALLOWED_URL_SCHEMES:
        if not scheme:
            raise InvalidRequest("URL must be absolute (http:// or https://)", field="url")
        raise InvalidRequest(f"URL scheme '{scheme}' is not allowed. Use http or https.", field="url")
    if not hostname:
        raise InvalidRequest("URL must include a hostname", field="url")

    if hostname.rstrip(".") in _CLOUD_METADATA_HOSTS:
        raise InvalidRequest(f"Access to '{hostname}' is blocked", field="url")
    if hostname.rstrip(".") in _LOOPBACK_HOSTS and not allow_local:
        raise InvalidRequest(f"Access to '{hostname}' is blocked", field="url")

    addr = _normalize_ip(hostname)
    if addr is not None:
        _check_address(addr, hostname, allow_local=allow_local)
    return url


# ── DNS rebinding defense ────────────────────────────────────────────

DNS_RESOLVE_TIMEOUT_SECONDS = 2.0


async def _resolve_dns(hostname: str) -> list[str]:
    """Resolve hostname to a deduplicated IP list without blocking the loop.

    Raises ValueError on DNS failure or timeout.
    """

    def _sync_resolve() -> list[str]:
        results = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
        seen: set[str] = set()
        ips: list[str] = []
        for _family, _type, _proto, _canonname, sockaddr in results:
            ip = sockaddr[0]
            if ip not in seen:
                seen.add(ip)
                ips.append(ip)
        return ips

    try:
        return await asyncio.wait_for(asyncio.to_thread(_sync_resolve), timeout=DNS_RESOLVE_TIMEOUT_SECONDS)
    except TimeoutError as e:
        raise ValueError(f"DNS resolution timed out for '{hostname}'") from e
    except (socket.gaierror, UnicodeError) as e:
        raise ValueError(f"DNS resolution failed for '{hostname}': {e}") from e


def _validate_resolved_ips(ips: list[str], hostname: str, *, allow_local: bool) -> None:
    for ip_str in ips:
        addr = _normalize_ip(ip_str.split("%", 1)[0])
        if addr is None:
            raise InvalidRequest(f"Invalid IP '{ip_str}' resolved from '{hostname}'", field="url")
        if any(addr in net for net in _CLOUD_METADATA_NETWORKS):
            raise InvalidRequest(f"'{hostname}' resolves to cloud metadata IP {ip_str}", field="url")
        if any(addr in net for net in _PRIVATE_NETWORKS):
            if allow_local:
                continue
            raise InvalidRequest(f"'{hostname}' resolves to private IP {ip_str}", field="url")
        # Reserved ranges outside the explicit list (documentation, benchmarking)
        if not addr.is_global:
            raise InvalidRequest(f"'{hostname}' resolves to non-global IP {ip_str}", field="url")


async def validate_resolved_url(url: str | None, *, allow_local: bool = False) -> str:
    """Full URL guard: :func:`validate_url` plus a check of what the host resolves to.

    A name that does not resolve is let through; the browser then reports it
    as a navigation failure.
    """
    url = validate_url(url, allow_local=allow_local)
    hostname = (urlsplit(url).hostname or "").lower()
    if _normalize_ip(hostname) is not None:
        return url

    try:
        ips = await _resolve_dns(hostname)
    except ValueError as e:
        logger.debug("Skipping resolved-address check: %s", e)
        return url
    _validate_resolved_ips(ips, hostname, allow_local=allow_local)
    return url


def validate_dimension(value: object, field: str) -> int:
    """Viewport width/height: a positive integer no larger than MAX_VIEWPORT_DIMENSION."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"{field} must be an integer", field=field)
    if value <= 0:
        raise InvalidRequest(f"{field} must be a positive integer", field=field)
    if value > MAX_VIEWPORT_DIMENSION:
        raise InvalidRequest(f"{field} must be at most {MAX_VIEWPORT_DIMENSION}", field=field)
    return value


def validate_timeout(timeout_ms: object) -> int:
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int):
        raise InvalidRequest("timeout must be an integer number of milliseconds", field="timeout")
    if not MIN_TIMEOUT_MS <= timeout_ms <= MAX_TIMEOUT_MS:
        raise InvalidRequest(
            f"timeout must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms",
            field="timeout",
        )
    return timeout_ms


def validate_capture_request(
    url: str | None,
    width: object,
    height: object,
    timeout_ms: object,
    *,
    allow_local: bool = False,
) -> str:
    """Validate all capture inputs; returns the normalised URL."""
    clean_url = validate_url(url, allow_local=allow_local)
    validate_dimension(width, "width")
    validate_dimension(height, "height")
    validate_timeout(timeout_ms)
    return clean_url


# ── Query-string coercion (endpoint layer) ──────────────────────────

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


def parse_int_param(raw: str | None, field: str, default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise InvalidRequest(f"{field} must be an integer", field=field) from None


def parse_bool_param(raw: str | None, field: str, default: bool = False) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_STRINGS:
        return True
    if value in _FALSE_STRINGS:
        return False
    raise InvalidRequest(f"{field} must be true or false", field=field)
