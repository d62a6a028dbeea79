"""Tests for environment-driven settings."""

import os
from unittest.mock import patch

import pytest

from unibox.infra.settings import (
    DEFAULT_UNIPILE_BASE_URL,
    LimitsConfig,
    ProviderConfig,
    Settings,
    webhook_secret,
)


class TestLimitsConfig:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            limits = LimitsConfig.from_env()
        assert limits == LimitsConfig()
        assert limits.max_per_hour == 50
        assert limits.per_recipient_cooldown_sec == 120

    def test_overrides(self):
        env = {"LIMIT_MAX_PER_HOUR": "3", "LIMIT_TRIAL_DAILY_CAP": " 5 "}
        with patch.dict(os.environ, env, clear=True):
            limits = LimitsConfig.from_env()
        assert limits.max_per_hour == 3
        assert limits.trial_daily_cap == 5

    def test_bad_integer(self):
        with patch.dict(os.environ, {"LIMIT_MAX_PER_HOUR": "lots"}, clear=True):
            with pytest.raises(RuntimeError, match="LIMIT_MAX_PER_HOUR must be an integer"):
                LimitsConfig.from_env()


class TestProviderConfig:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = ProviderConfig.from_env()
        assert config.unipile_base_url == DEFAULT_UNIPILE_BASE_URL
        assert config.unipile_api_key == ""

    def test_trailing_slash_stripped(self):
        env = {"UNIPILE_BASE_URL": "https://api.example.test/", "PROVIDER_HTTP_TIMEOUT": "2.5"}
        with patch.dict(os.environ, env, clear=True):
            config = ProviderConfig.from_env()
        assert config.unipile_base_url == "https://api.example.test"
        assert config.http_timeout == 2.5


class TestSettings:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()
        assert settings.ledger_backend == "postgres"
        assert settings.entitlements_mode == "database"

    def test_choices_are_case_insensitive(self):
        env = {"LEDGER_BACKEND": "Memory", "COUNTER_BACKEND": "memory", "ENTITLEMENTS_MODE": "ALLOW_ALL"}
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()
        assert settings.ledger_backend == "memory"
        assert settings.entitlements_mode == "allow_all"

    def test_unknown_choice(self):
        with patch.dict(os.environ, {"COUNTER_BACKEND": "redis"}, clear=True):
            with pytest.raises(RuntimeError, match="COUNTER_BACKEND"):
                Settings.from_env()


class TestWebhookSecret:
    def test_per_provider(self):
        env = {"UNIPILE_WEBHOOK_SECRET": "a", "GMAIL_WEBHOOK_SECRET": "b"}
        with patch.dict(os.environ, env, clear=True):
            assert webhook_secret("unipile") == "a"
            assert webhook_secret("gmail") == "b"
            assert webhook_secret("microsoft") == ""
