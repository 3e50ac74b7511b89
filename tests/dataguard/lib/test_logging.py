"""
Tests for structured logging setup.
"""

from __future__ import annotations

import logging

import structlog

from dataguard.lib.logging import hash_uid, setup_logging


def test_hash_uid_is_short_and_stable():
    assert hash_uid("user-1") == hash_uid("user-1")
    assert len(hash_uid("user-1")) == 12
    assert hash_uid("user-1") != hash_uid("user-2")
    assert "user-1" not in hash_uid("user-1")


def test_setup_logging_configures_root_and_noisy_loggers(monkeypatch):
    monkeypatch.setenv("DATAGUARD_DEV_MODE", "1")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert structlog.is_configured()
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        structlog.reset_defaults()
