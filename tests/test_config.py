# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for urlstatus.config: validation, YAML/env overrides, SettingsStore."""

from __future__ import annotations

import logging

import pytest

from urlstatus import Status
from urlstatus.config import (
    NEEDS_AUTH_KEY,
    SETTINGS_KEY,
    AutoCheckStates,
    DomainRuleSettings,
    Settings,
    SettingsStore,
    load_settings_file,
    read_overrides,
)
from urlstatus.errors import ConfigurationError
from urlstatus.kvstore import InMemoryKVStore
from urlstatus.rules import DomainRule, MatchLevel

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.cache_duration == 60.0
        assert not s.aggressive_caching_enabled
        assert not s.auto_check_enabled
        assert s.auto_check_delay == 10.0
        assert s.domain_rules == []
        assert not s.is_configured

    def test_missing_fields(self):
        s = Settings(database_id="db", property_name="  ")
        assert s.missing_fields() == ["integration_token", "property_name"]
        with pytest.raises(ConfigurationError, match="integration_token, property_name"):
            s.require_configured()

    def test_configured(self, configured):
        s = Settings(**configured)
        assert s.is_configured
        s.require_configured()

    @pytest.mark.parametrize("value", [0, -5])
    def test_cache_duration_positive(self, value):
        with pytest.raises(ValueError):
            Settings(cache_duration=value)

    def test_log_level_normalized(self):
        assert Settings(log_level=" debug ").log_level == "DEBUG"
        with pytest.raises(ValueError):
            Settings(log_level="chatty")

    def test_sync_interval_defaults_to_cache_duration(self):
        assert Settings(cache_duration=15).effective_sync_interval == 15
        assert Settings(cache_duration=15, sync_interval=5).effective_sync_interval == 5

    def test_unknown_keys_ignored(self):
        assert Settings(some_future_option=True).cache_duration == 60.0

    def test_rules_preserve_order(self):
        s = Settings(
            domain_rules=[
                {"domain": "Mail.Example.com", "match_level": "disabled"},
                {"domain": "example.com", "match_level": "path1_partials"},
            ]
        )
        assert s.rules() == [
            DomainRule("mail.example.com", MatchLevel.DISABLED),
            DomainRule("example.com", MatchLevel.PATH1_PARTIALS),
        ]


class TestDomainRuleSettings:
    def test_strips_fields(self):
        rule = DomainRuleSettings(domain=" github.com ", match_level=" custom_partials ", pattern=" /*/* ")
        assert (rule.domain, rule.match_level, rule.pattern) == ("github.com", "custom_partials", "/*/*")

    def test_empty_domain_rejected(self):
        with pytest.raises(ValueError, match="domain"):
            DomainRuleSettings(domain="  ")

    @pytest.mark.parametrize("level", ["custom_exact", "custom_partials"])
    def test_custom_levels_need_pattern(self, level):
        with pytest.raises(ValueError, match="requires a pattern"):
            DomainRuleSettings(domain="github.com", match_level=level)

    def test_unknown_level_round_trips(self):
        rule = DomainRuleSettings(domain="a.com", match_level="path7_partials")
        assert rule.to_rule().match_level == "path7_partials"


class TestAutoCheckStates:
    def test_defaults(self):
        states = AutoCheckStates()
        assert states.allows(Status.RED)
        assert states.allows(Status.ORANGE)
        assert not states.allows(Status.GREEN)

    def test_gray_always_allowed(self):
        assert AutoCheckStates(red=False, orange=False, green=False).allows(Status.GRAY)


# ---------------------------------------------------------------------------
# File + environment overrides
# ---------------------------------------------------------------------------


class TestOverrides:
    def test_no_file_no_env(self):
        assert read_overrides() == {}

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "urlstatus.yaml"
        path.write_text(
            "integration_token: secret_file\n"
            "cache_duration: 5\n"
            "domain_rules:\n"
            "  - domain: github.com\n"
            "    match_level: custom_partials\n"
            "    pattern: /*/*\n"
        )
        s = load_settings_file(path)
        assert s.integration_token == "secret_file"
        assert s.cache_duration == 5
        assert s.rules()[0].pattern == "/*/*"

    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        path = tmp_path / "urlstatus.yaml"
        path.write_text("database_id: from_file\ncache_duration: 5\n")
        monkeypatch.setenv("URLSTATUS_DATABASE_ID", "from_env")
        monkeypatch.setenv("URLSTATUS_CACHE_DURATION", "15")
        monkeypatch.setenv("URLSTATUS_LOG_LEVEL", "warning")
        s = load_settings_file(path)
        assert s.database_id == "from_env"
        assert s.cache_duration == 15.0
        assert s.log_level == "WARNING"

    def test_blank_env_ignored(self, monkeypatch):
        monkeypatch.setenv("URLSTATUS_TOKEN", "   ")
        assert read_overrides() == {}

    def test_base_settings(self, configured, monkeypatch):
        monkeypatch.setenv("URLSTATUS_PROPERTY", "Link")
        s = load_settings_file(base=Settings(**configured))
        assert s.property_name == "Link"
        assert s.database_id == "db123"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert read_overrides(path) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            read_overrides(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("key: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            read_overrides(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            read_overrides(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad_values.yaml"
        path.write_text("cache_duration: -1\n")
        with pytest.raises(ConfigurationError, match="Invalid settings"):
            load_settings_file(path)


# ---------------------------------------------------------------------------
# SettingsStore
# ---------------------------------------------------------------------------


class TestSettingsStore:
    async def test_empty_store_loads_defaults(self):
        s = await SettingsStore(InMemoryKVStore()).load()
        assert s == Settings()

    async def test_save_and_load(self, store, configured):
        settings_store = SettingsStore(store)
        await settings_store.save(Settings(**configured, aggressive_caching_enabled=True))
        assert store.data[SETTINGS_KEY]["database_id"] == "db123"
        loaded = await settings_store.load()
        assert loaded.aggressive_caching_enabled

    async def test_overrides_win_but_are_not_persisted(self, store, configured):
        await store.set({SETTINGS_KEY: configured})
        settings_store = SettingsStore(store, overrides={"database_id": "override"})
        assert (await settings_store.load()).database_id == "override"
        await settings_store.update(cache_duration=5)
        assert store.data[SETTINGS_KEY]["database_id"] == "db123"
        assert store.data[SETTINGS_KEY]["cache_duration"] == 5

    async def test_update_validates(self, settings_store):
        with pytest.raises(ConfigurationError):
            await settings_store.update(cache_duration=0)
        assert (await settings_store.load()).cache_duration == 60.0

    async def test_stored_custom_rule_without_pattern_kept(self, store, configured, caplog):
        bad_rule = {"domain": "a.com", "match_level": "custom_partials"}
        await store.set({SETTINGS_KEY: {**configured, "domain_rules": [bad_rule]}})
        settings_store = SettingsStore(store)
        with caplog.at_level(logging.WARNING, logger="urlstatus.config"):
            loaded = await settings_store.load()
        assert loaded.rules() == [DomainRule("a.com", "custom_partials", "")]
        assert "has no pattern" in caplog.text

        updated = await settings_store.update(cache_duration=5)
        assert updated.cache_duration == 5
        assert store.data[SETTINGS_KEY]["domain_rules"][0]["domain"] == "a.com"

    async def test_update_rejects_custom_rule_without_pattern(self, settings_store):
        with pytest.raises(ConfigurationError, match="requires a pattern"):
            await settings_store.update(domain_rules=[{"domain": "a.com", "match_level": "custom_exact"}])
        assert (await settings_store.load()).domain_rules == []

    async def test_non_dict_settings_ignored(self, store, caplog):
        await store.set({SETTINGS_KEY: "garbage"})
        with caplog.at_level(logging.WARNING, logger="urlstatus.config"):
            assert await SettingsStore(store).load() == Settings()
        assert "Ignoring stored settings" in caplog.text

    async def test_clear_credentials(self, settings_store):
        await settings_store.clear_credentials()
        s = await settings_store.load()
        assert s.integration_token == ""
        assert s.database_id == "db123"

    async def test_clear_credentials_warns_on_override(self, store, configured, caplog):
        await store.set({SETTINGS_KEY: configured})
        settings_store = SettingsStore(store, overrides={"integration_token": "secret_env"})
        with caplog.at_level(logging.WARNING, logger="urlstatus.config"):
            await settings_store.clear_credentials()
        assert "still set by an override" in caplog.text
        assert store.data[SETTINGS_KEY]["integration_token"] == ""

    async def test_needs_authentication_flag(self, store, settings_store):
        assert not await settings_store.needs_authentication()
        await settings_store.set_needs_authentication(True)
        assert store.data[NEEDS_AUTH_KEY] is True
        assert await settings_store.needs_authentication()
        await settings_store.set_needs_authentication(False)
        assert not await settings_store.needs_authentication()
