# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import urlstatus  # noqa: F401
except ImportError:
    raise ImportError("urlstatus is not installed. Run: pip install -e '.[dev]'") from None

import pytest

from urlstatus.cache import ClassificationCache
from urlstatus.config import Settings, SettingsStore
from urlstatus.engine import ClassificationEngine
from urlstatus.kvstore import InMemoryKVStore
from urlstatus.lookup import InMemoryLookupService
from urlstatus.status import StatusBoard

CONFIGURED = {
    "integration_token": "secret_test",
    "database_id": "db123",
    "property_name": "URL",
    "last_edited_property_name": "Last edited",
}


class FakeClock:
    """Manually advanced wall clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Environment overrides never leak in from the developer's shell."""
    for name in (
        "URLSTATUS_TOKEN",
        "URLSTATUS_DATABASE_ID",
        "URLSTATUS_PROPERTY",
        "URLSTATUS_LAST_EDITED_PROPERTY",
        "URLSTATUS_CACHE_DURATION",
        "URLSTATUS_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def configured() -> dict:
    """Minimal complete settings as a plain dict."""
    return dict(CONFIGURED)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryKVStore:
    return InMemoryKVStore()


@pytest.fixture
async def settings_store(store) -> SettingsStore:
    s = SettingsStore(store)
    await s.save(Settings(**CONFIGURED))
    return s


@pytest.fixture
def lookup() -> InMemoryLookupService:
    return InMemoryLookupService()


@pytest.fixture
def cache(store, clock) -> ClassificationCache:
    return ClassificationCache(store, clock=clock)


@pytest.fixture
def board(store) -> StatusBoard:
    return StatusBoard(store)


@pytest.fixture
def engine(cache, lookup, settings_store, board) -> ClassificationEngine:
    return ClassificationEngine(cache, lookup, settings_store, sink=board)
