# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge. Interactive CLI: ConsoleRenderer, daemon: JSONRenderer.

Every record coming from ``urlstatus.<module>`` carries ``component=<module>``,
and integration tokens are masked before any renderer sees them.

Leaf module (no urlstatus imports). Safe to call before any service is built.
"""

from __future__ import annotations

import contextlib
import logging
import re
import sys
from collections.abc import Iterator

import structlog

# httpx logs every request at INFO; keep those out of classification output
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_PACKAGE_PREFIX = "urlstatus."
_TOKEN_RE = re.compile(r"\b(secret_|ntn_)[A-Za-z0-9]+")


def _add_component(logger, method_name: str, event_dict: dict) -> dict:
    name = event_dict.get("logger", "")
    if isinstance(name, str) and name.startswith(_PACKAGE_PREFIX):
        event_dict.setdefault("component", name[len(_PACKAGE_PREFIX) :])
    return event_dict


def _redact_tokens(logger, method_name: str, event_dict: dict) -> dict:
    for key, value in event_dict.items():
        if isinstance(value, str) and ("secret_" in value or "ntn_" in value):
            event_dict[key] = _TOKEN_RE.sub(r"\1***", value)
    return event_dict


@contextlib.contextmanager
def bound_session(session_id: str, **extra: str) -> Iterator[None]:
    """Tag every record logged inside the block (and tasks it spawns) with *session_id*."""
    with structlog.contextvars.bound_contextvars(session_id=session_id, **extra):
        yield


def configure(*, json_output: bool = False, level: str = "INFO") -> None:
    """Route stdlib ``logging`` records through structlog renderers.

    Args:
        json_output: True for JSON lines (``watch --json-logs``), False for human-readable.
        level: Root logger level name; unknown names fall back to INFO.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        _add_component,
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
            _redact_tokens,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(root_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
