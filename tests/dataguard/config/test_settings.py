"""
Tests for EngineSettings environment loading.
"""

from __future__ import annotations

import pytest

from dataguard.config.settings import EngineSettings
from dataguard.lib.exceptions import ConfigurationError


class TestEngineSettingsDefaults:
    def test_defaults(self):
        settings = EngineSettings.from_env({})
        assert settings.default_retention_days == 2555
        assert settings.max_retention_days == 2555
        assert settings.expiring_soon_days == 30
        assert settings.max_write_retries == 5
        assert settings.store_timeout_seconds == 5.0
        assert settings.database_url == "sqlite:///dataguard.db"
        assert settings.dev_mode is False
        assert settings.environment == "development"


class TestEngineSettingsFromEnv:
    def test_overrides(self):
        settings = EngineSettings.from_env(
            {
                "DATAGUARD_DEFAULT_RETENTION_DAYS": "365",
                "DATAGUARD_MAX_RETENTION_DAYS": "730",
                "DATAGUARD_EXPIRING_SOON_DAYS": "0",
                "DATAGUARD_MAX_WRITE_RETRIES": "3",
                "DATAGUARD_STORE_TIMEOUT": "1.5",
                "DATAGUARD_DATABASE_URL": "postgresql://db/dataguard",
                "DATAGUARD_DEV_MODE": "1",
            }
        )
        assert settings.default_retention_days == 365
        assert settings.max_retention_days == 730
        assert settings.expiring_soon_days == 0
        assert settings.max_write_retries == 3
        assert settings.store_timeout_seconds == 1.5
        assert settings.database_url == "postgresql://db/dataguard"
        assert settings.dev_mode is True

    def test_empty_values_use_defaults(self):
        assert EngineSettings.from_env({"DATAGUARD_MAX_WRITE_RETRIES": ""}).max_write_retries == 5

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("DATAGUARD_DEFAULT_RETENTION_DAYS", "seven"),
            ("DATAGUARD_DEFAULT_RETENTION_DAYS", "0"),
            ("DATAGUARD_MAX_WRITE_RETRIES", "-1"),
            ("DATAGUARD_STORE_TIMEOUT", "fast"),
            ("DATAGUARD_STORE_TIMEOUT", "0"),
        ],
    )
    def test_invalid_values(self, name, value):
        with pytest.raises(ConfigurationError, match=name):
            EngineSettings.from_env({name: value})

    def test_default_cannot_exceed_max(self):
        with pytest.raises(ConfigurationError):
            EngineSettings.from_env(
                {
                    "DATAGUARD_DEFAULT_RETENTION_DAYS": "100",
                    "DATAGUARD_MAX_RETENTION_DAYS": "50",
                }
            )

    def test_dev_mode_refused_in_production(self):
        with pytest.raises(ConfigurationError, match="production"):
            EngineSettings.from_env(
                {"DATAGUARD_DEV_MODE": "1", "DATAGUARD_ENVIRONMENT": "production"}
            )
