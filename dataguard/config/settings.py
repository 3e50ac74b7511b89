"""
Engine Configuration for DataGuard.

Settings are read once from the environment and passed explicitly to the
engine. Nothing in the package reads the environment after construction.

Environment variables:
- DATAGUARD_DEFAULT_RETENTION_DAYS: retention when the caller gives none (2555, ~7 years)
- DATAGUARD_MAX_RETENTION_DAYS: upper bound accepted from callers (2555)
- DATAGUARD_EXPIRING_SOON_DAYS: window reported as "expiring_soon" (30)
- DATAGUARD_MAX_WRITE_RETRIES: compare-and-swap attempts per record write (5)
- DATAGUARD_STORE_TIMEOUT: seconds before a store call surfaces StoreUnavailable (5.0)
- DATAGUARD_DATABASE_URL: SQLAlchemy URL for the SQL store
- DATAGUARD_DEV_MODE / DATAGUARD_ENVIRONMENT: development switches
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from dataguard.lib.exceptions import ConfigurationError

DEFAULT_RETENTION_DAYS = 2555
EXPIRING_SOON_DAYS = 30


def _int_setting(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_setting(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for the data protection engine."""

    default_retention_days: int = DEFAULT_RETENTION_DAYS
    max_retention_days: int = DEFAULT_RETENTION_DAYS
    expiring_soon_days: int = EXPIRING_SOON_DAYS
    max_write_retries: int = 5
    store_timeout_seconds: float = 5.0
    database_url: str = "sqlite:///dataguard.db"
    dev_mode: bool = False
    environment: str = "development"

    def __post_init__(self) -> None:
        if self.default_retention_days > self.max_retention_days:
            raise ConfigurationError(
                "DATAGUARD_DEFAULT_RETENTION_DAYS cannot exceed DATAGUARD_MAX_RETENTION_DAYS"
            )
        if self.dev_mode and self.environment == "production":
            raise ConfigurationError(
                "DATAGUARD_DEV_MODE=1 is not allowed when DATAGUARD_ENVIRONMENT=production"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineSettings:
        """Build settings from environment variables, validating every value."""
        env = os.environ if environ is None else environ
        return cls(
            default_retention_days=_int_setting(
                env, "DATAGUARD_DEFAULT_RETENTION_DAYS", DEFAULT_RETENTION_DAYS
            ),
            max_retention_days=_int_setting(
                env, "DATAGUARD_MAX_RETENTION_DAYS", DEFAULT_RETENTION_DAYS
            ),
            expiring_soon_days=_int_setting(
                env, "DATAGUARD_EXPIRING_SOON_DAYS", EXPIRING_SOON_DAYS, minimum=0
            ),
            max_write_retries=_int_setting(env, "DATAGUARD_MAX_WRITE_RETRIES", 5),
            store_timeout_seconds=_float_setting(env, "DATAGUARD_STORE_TIMEOUT", 5.0),
            database_url=env.get("DATAGUARD_DATABASE_URL", "sqlite:///dataguard.db"),
            dev_mode=env.get("DATAGUARD_DEV_MODE") == "1",
            environment=env.get("DATAGUARD_ENVIRONMENT", "development"),
        )
