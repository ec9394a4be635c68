# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for cleancapture.logging_config — structlog + stdlib bridge."""

from __future__ import annotations

import json
import logging
import sys

import pytest
import structlog

from cleancapture.logging_config import bind_request, clear_request, configure


@pytest.fixture(autouse=True)
def _reset_logging():
    """Ensure clean logging state before/after each test."""
    root = logging.getLogger()
    old_handlers = root.handlers[:]
    old_level = root.level
    yield
    root.handlers = old_handlers
    root.setLevel(old_level)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


class TestConsoleRenderer:
    """CLI / stdio mode: ConsoleRenderer (human-readable)."""

    def test_configure_console_mode(self):
        configure(json_output=False)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.handlers[0].stream is sys.stderr

    def test_console_output_is_human_readable(self, capsys):
        configure(json_output=False)
        logging.getLogger("test.console").info("hello world")
        captured = capsys.readouterr()
        assert "hello world" in captured.err
        assert not captured.err.strip().startswith("{")


class TestJSONRenderer:
    """HTTP mode: JSONRenderer (machine-parseable)."""

    def test_json_output_is_valid_json(self, capsys):
        configure(json_output=True)
        logging.getLogger("cleancapture.capture").info("Capture complete: %d bytes", 1234)
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed["event"] == "Capture complete: 1234 bytes"
        assert parsed["logger"] == "cleancapture.capture"
        assert parsed["level"] == "info"
        assert "timestamp" in parsed

    def test_nothing_on_stdout(self, capsys):
        configure(json_output=True)
        logging.getLogger("test.stdout").warning("to stderr")
        assert capsys.readouterr().out == ""


class TestRequestBinding:
    """Per-capture request_id correlates every line of one capture."""

    def test_bound_fields_in_json_output(self, capsys):
        configure(json_output=True)
        bind_request("req123", url="https://example.com")
        logging.getLogger("test.ctx").info("navigating")
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed["request_id"] == "req123"
        assert parsed["url"] == "https://example.com"

    def test_clear_request(self, capsys):
        configure(json_output=True)
        bind_request("req123")
        clear_request()
        logging.getLogger("test.ctx").info("after")
        parsed = json.loads(capsys.readouterr().err.strip())
        assert "request_id" not in parsed


class TestLogLevel:
    def test_default_level_is_info(self):
        configure()
        assert logging.getLogger().level == logging.INFO

    def test_custom_level(self):
        configure(level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_level_falls_back_to_info(self):
        configure(level="NONEXISTENT")
        assert logging.getLogger().level == logging.INFO

    def test_noisy_loggers_capped(self):
        configure(level="INFO")
        assert logging.getLogger("uvicorn.access").level == logging.WARNING

    def test_no_handler_stacking(self):
        configure(json_output=False)
        configure(json_output=True)
        configure(json_output=False)
        assert len(logging.getLogger().handlers) == 1
