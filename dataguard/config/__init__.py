"""Configuration for DataGuard."""

from dataguard.config.settings import EngineSettings

__all__ = ["EngineSettings"]
