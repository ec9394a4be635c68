# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import cleancapture  # noqa: F401
except ImportError:
    raise ImportError("cleancapture is not installed. Run: pip install -e '.[dev]'") from None

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip chromium-marked tests unless CLEANCAPTURE_BROWSER_TESTS is set."""
    import os

    if os.environ.get("CLEANCAPTURE_BROWSER_TESTS", "").strip().lower() in ("1", "true", "yes"):
        return
    skip_marker = pytest.mark.skip(reason="set CLEANCAPTURE_BROWSER_TESTS=1 to run real-browser tests")
    for item in items:
        if "chromium" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _block_real_browser(request, monkeypatch):
    """Safety net: prevent real browser launches in unit tests.

    Any test that needs a controller should patch
    ``cleancapture.server._get_controller`` explicitly; that patch takes
    priority over this fixture. Tests that forget to patch get a clear error
    instead of silently trying to launch Chromium.

    Tests that exercise ``_get_controller`` itself can opt out with::

        @pytest.mark.allow_real_controller
    """
    if "allow_real_controller" in request.keywords:
        return

    async def _no_real_controller():
        raise RuntimeError(
            "Test tried to create a real capture controller. Patch 'cleancapture.server._get_controller' in your test."
        )

    monkeypatch.setattr("cleancapture.server._get_controller", _no_real_controller)


@pytest.fixture(autouse=True)
def _reset_state():
    """Reset server module state before and after each test."""
    import cleancapture.server as srv

    old_transport_mode = srv._transport_mode
    old_draining = srv._draining
    old_manager = srv._manager
    old_controller = srv._controller
    old_capture_config = srv._capture_config
    old_browser_config = srv._browser_config
    srv._transport_mode = "stdio"
    srv._draining = False
    srv._manager = None
    srv._controller = None
    yield
    srv._transport_mode = old_transport_mode
    srv._draining = old_draining
    srv._manager = old_manager
    srv._controller = old_controller
    srv._capture_config = old_capture_config
    srv._browser_config = old_browser_config


@pytest.fixture(autouse=True)
def _offline_dns(monkeypatch):
    """Resolve every hostname to a public address without touching the network.

    Tests covering the resolved-address check patch
    ``cleancapture.validation._resolve_dns`` again with their own answers.
    """

    async def _fake_resolve(hostname):
        return ["93.184.216.34"]

    monkeypatch.setattr("cleancapture.validation._resolve_dns", _fake_resolve)
