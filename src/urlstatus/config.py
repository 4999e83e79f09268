# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Settings model, KV-backed settings store, and YAML/env loading.

Settings are persisted in the KV store under ``settings`` and read fresh
for every classification, so edits made by another process apply on the
next navigation.  A YAML file and ``URLSTATUS_*`` environment variables
supply overrides that always win over the stored values:

    URLSTATUS_TOKEN                 integration_token
    URLSTATUS_DATABASE_ID           database_id
    URLSTATUS_PROPERTY              property_name
    URLSTATUS_LAST_EDITED_PROPERTY  last_edited_property_name
    URLSTATUS_CACHE_DURATION        cache_duration (minutes)
    URLSTATUS_LOG_LEVEL             log_level
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator, model_validator

from . import Status
from .errors import ConfigurationError
from .kvstore import KVStoreProtocol
from .rules import CUSTOM_LEVELS, DomainRule, MatchLevel

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
NEEDS_AUTH_KEY = "needs_authentication"

DEFAULT_API_BASE_URL = "https://api.notion.com/v1"

_ENV_OVERRIDES: dict[str, str] = {
    "URLSTATUS_TOKEN": "integration_token",
    "URLSTATUS_DATABASE_ID": "database_id",
    "URLSTATUS_PROPERTY": "property_name",
    "URLSTATUS_LAST_EDITED_PROPERTY": "last_edited_property_name",
    "URLSTATUS_CACHE_DURATION": "cache_duration",
    "URLSTATUS_LOG_LEVEL": "log_level",
}

_REQUIRED_FIELDS = ("integration_token", "database_id", "property_name")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class AutoCheckStates(BaseModel):
    """Which colors re-trigger a reconciled check.  GRAY always does."""

    model_config = ConfigDict(extra="ignore")

    red: bool = True
    orange: bool = True
    green: bool = False

    def allows(self, state: Status) -> bool:
        if state == Status.GRAY:
            return True
        return {Status.RED: self.red, Status.ORANGE: self.orange, Status.GREEN: self.green}[state]


class DomainRuleSettings(BaseModel):
    """A domain rule as written in settings.

    ``match_level`` stays a plain string: unknown levels saved by other
    versions survive a round trip and fall back to the site root at
    matching time.
    """

    model_config = ConfigDict(extra="ignore")

    domain: str
    match_level: str = MatchLevel.DOMAIN_PARTIALS
    pattern: str = ""

    @field_validator("domain", "match_level", "pattern")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("domain")
    @classmethod
    def _domain_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("domain must not be empty")
        return v.lower()

    @model_validator(mode="after")
    def _custom_needs_pattern(self, info: ValidationInfo) -> DomainRuleSettings:
        if self.match_level in CUSTOM_LEVELS and not self.pattern:
            if info.context and info.context.get("lenient_rules"):
                logger.warning("%s rule for %s has no pattern, keeping it", self.match_level, self.domain)
                return self
            raise ValueError(f"{self.match_level} rule for {self.domain} requires a pattern")
        return self

    def to_rule(self) -> DomainRule:
        return DomainRule(domain=self.domain, match_level=self.match_level, pattern=self.pattern)


class Settings(BaseModel):
    """Everything the engine, sync, and service read from configuration."""

    model_config = ConfigDict(extra="ignore")

    integration_token: str = ""
    database_id: str = ""
    property_name: str = ""
    last_edited_property_name: str = ""
    cache_duration: float = Field(default=60.0, gt=0, description="GREEN lifetime in minutes")
    aggressive_caching_enabled: bool = False
    domain_rules: list[DomainRuleSettings] = Field(default_factory=list)
    auto_check_enabled: bool = False
    auto_check_delay: float = Field(default=10.0, ge=0, description="Seconds on the same URL before auto-check")
    auto_check_states: AutoCheckStates = Field(default_factory=AutoCheckStates)
    sync_interval: float | None = Field(default=None, gt=0, description="Minutes; None means cache_duration")
    log_level: str = "INFO"
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: float = Field(default=30.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return v

    def missing_fields(self) -> list[str]:
        return [name for name in _REQUIRED_FIELDS if not getattr(self, name).strip()]

    def require_configured(self) -> None:
        """Raise ConfigurationError when a required setting is empty."""
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    @property
    def is_configured(self) -> bool:
        return not self.missing_fields()

    def rules(self) -> list[DomainRule]:
        return [r.to_rule() for r in self.domain_rules]

    @property
    def effective_sync_interval(self) -> float:
        """Sync period in minutes."""
        return self.sync_interval if self.sync_interval is not None else self.cache_duration


# ---------------------------------------------------------------------------
# File + environment overrides
# ---------------------------------------------------------------------------


def read_overrides(path: str | Path | None = None) -> dict[str, Any]:
    """Read a YAML settings file (optional), then apply ``URLSTATUS_*`` variables.

    Raises:
        ConfigurationError: If the file is missing, unparseable, or not a mapping.
    """
    overrides: dict[str, Any] = {}
    if path is not None:
        p = Path(path).expanduser()
        try:
            with open(p, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read settings file {p}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {p}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {p} must contain a mapping, got {type(data).__name__}")
        overrides.update(data)

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if value:
            overrides[field_name] = value
    return overrides


def _validate(data: Mapping[str, Any], *, lenient_rules: bool = False) -> Settings:
    context = {"lenient_rules": True} if lenient_rules else None
    try:
        return Settings.model_validate(dict(data), context=context)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e


def load_settings_file(path: str | Path | None = None, *, base: Settings | None = None) -> Settings:
    """*base* (or defaults) with the file and environment overrides applied."""
    data = base.model_dump() if base is not None else {}
    data.update(read_overrides(path))
    return _validate(data)


# ---------------------------------------------------------------------------
# KV-backed store
# ---------------------------------------------------------------------------


class SettingsStore:
    """Settings persisted in the KV store, with non-persisted overrides on top."""

    def __init__(self, store: KVStoreProtocol, *, overrides: Mapping[str, Any] | None = None) -> None:
        self._store = store
        self._overrides = dict(overrides or {})

    async def _stored(self) -> dict[str, Any]:
        raw = (await self._store.get([SETTINGS_KEY])).get(SETTINGS_KEY)
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring stored settings of type %s", type(raw).__name__)
            return {}
        return raw

    async def load(self) -> Settings:
        """Current settings.

        A stored custom rule without a pattern is kept (it matches the site
        root only) instead of failing every load; ``update`` still rejects it.

        Raises:
            ConfigurationError: If the stored or overridden values are invalid.
        """
        data = await self._stored()
        data.update(self._overrides)
        return _validate(data, lenient_rules=True)

    async def save(self, settings: Settings) -> None:
        await self._store.set({SETTINGS_KEY: settings.model_dump(mode="json")})

    async def update(self, **changes: Any) -> Settings:
        """Apply *changes* to the stored settings and persist them."""
        data = await self._stored()
        data.update(changes)
        stored = _validate(data, lenient_rules="domain_rules" not in changes)
        await self.save(stored)
        return await self.load()

    async def clear_credentials(self) -> None:
        """Forget the integration token (after a 401 or logout)."""
        await self.update(integration_token="")
        if "integration_token" in self._overrides:
            logger.warning("Integration token cleared from storage but still set by an override")
        logger.info("Stored credentials cleared")

    async def set_needs_authentication(self, flag: bool) -> None:
        await self._store.set({NEEDS_AUTH_KEY: bool(flag)})

    async def needs_authentication(self) -> bool:
        return bool((await self._store.get([NEEDS_AUTH_KEY])).get(NEEDS_AUTH_KEY, False))
