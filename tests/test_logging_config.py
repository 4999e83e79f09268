# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for urlstatus.logging_config: structlog + stdlib bridge."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import pytest
import structlog

from urlstatus.logging_config import bound_session, configure
from urlstatus.service import UrlStatusService


@pytest.fixture(autouse=True)
def _reset_logging():
    """Ensure clean logging state before/after each test."""
    root = logging.getLogger()
    old_handlers = root.handlers[:]
    old_level = root.level
    noisy = {name: logging.getLogger(name).level for name in ("httpx", "httpcore", "aiosqlite")}
    yield
    root.handlers = old_handlers
    root.setLevel(old_level)
    for name, level in noisy.items():
        logging.getLogger(name).setLevel(level)
    structlog.reset_defaults()


class TestRenderers:
    def test_single_stderr_handler(self):
        configure()
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.handlers[0].stream is sys.stderr

    def test_console_is_human_readable(self, capsys):
        configure(json_output=False)
        logging.getLogger("urlstatus.engine").warning("cache-only result")
        err = capsys.readouterr().err
        assert "cache-only result" in err
        assert "warn" in err.lower()
        assert not err.strip().startswith("{")

    def test_json_lines(self, capsys):
        configure(json_output=True)
        logging.getLogger("urlstatus.sync").info("delta sync complete")
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed["event"] == "delta sync complete"
        assert parsed["logger"] == "urlstatus.sync"
        assert parsed["level"] == "info"
        assert "timestamp" in parsed

    def test_structlog_contextvars(self, capsys):
        configure(json_output=True)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(session_id="tab1")
        try:
            structlog.get_logger("urlstatus.service").info("navigation")
            parsed = json.loads(capsys.readouterr().err.strip())
            assert parsed["session_id"] == "tab1"
        finally:
            structlog.contextvars.clear_contextvars()

    def test_repeated_configure_does_not_stack(self):
        configure(json_output=False)
        configure(json_output=True)
        assert len(logging.getLogger().handlers) == 1


class TestLevels:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [("INFO", logging.INFO), ("debug", logging.DEBUG), ("bogus", logging.INFO)],
    )
    def test_root_level(self, name, expected):
        configure(level=name)
        assert logging.getLogger().level == expected

    def test_http_loggers_quieted(self, capsys):
        configure(level="DEBUG", json_output=True)
        assert logging.getLogger("httpx").level == logging.WARNING
        logging.getLogger("httpx").info("HTTP Request: POST https://api.notion.com/v1/databases/x/query")
        assert capsys.readouterr().err == ""

    def test_http_loggers_follow_stricter_root(self):
        configure(level="ERROR")
        assert logging.getLogger("httpcore").level == logging.ERROR


class TestUrlStatusFields:
    def test_component_from_logger_name(self, capsys):
        configure(json_output=True)
        logging.getLogger("urlstatus.sync").info("full sync complete")
        logging.getLogger("thirdparty").info("unrelated")
        first, second = (json.loads(line) for line in capsys.readouterr().err.splitlines())
        assert first["component"] == "sync"
        assert "component" not in second

    @pytest.mark.parametrize("token", ["secret_abc123XYZ", "ntn_4567abc"])
    def test_tokens_masked(self, capsys, token):
        configure(json_output=True)
        logging.getLogger("urlstatus.notion").warning("Token %s rejected", token)
        err = capsys.readouterr().err
        assert token not in err
        assert json.loads(err)["event"] == f"Token {token.split('_')[0]}_*** rejected"

    def test_tokens_masked_in_console_output(self, capsys):
        configure(json_output=False)
        structlog.get_logger("urlstatus.service").warning("login failed", token="secret_abc123")
        err = capsys.readouterr().err
        assert "secret_abc123" not in err
        assert "secret_***" in err

    async def test_bound_session_reaches_spawned_tasks(self, capsys):
        configure(json_output=True)

        async def later():
            logging.getLogger("urlstatus.service").info("auto-check")

        with bound_session("tab1", url="https://a.com/"):
            task = asyncio.get_running_loop().create_task(later())
        await task
        logging.getLogger("urlstatus.service").info("outside")
        inside, outside = (json.loads(line) for line in capsys.readouterr().err.splitlines())
        assert (inside["session_id"], inside["url"]) == ("tab1", "https://a.com/")
        assert "session_id" not in outside

    async def test_navigation_logs_carry_session(self, capsys, store, lookup, settings_store):
        await settings_store.update(auto_check_enabled=True, auto_check_delay=5)
        service = UrlStatusService(store, lookup, settings_store=settings_store)
        configure(json_output=True, level="DEBUG")
        try:
            await service.on_navigation("tab7", "https://example.com/p")
        finally:
            await service.shutdown()
        records = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
        scheduled = [r for r in records if r["event"].startswith("Auto-check in")]
        assert scheduled
        assert scheduled[0]["session_id"] == "tab7"
        assert scheduled[0]["component"] == "service"
