"""
Shared test fixtures for DataGuard.

This module provides common fixtures used across all test modules:
- Environment setup (dev mode)
- Fixed master key and CryptoVault
- Fixed, advanceable clock
- In-memory record and rule stores
- SQLite-backed SQL stores
- A fully wired DataProtectionEngine

Usage:
    All fixtures are automatically available to any test in the tests/ directory.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# ---------------------------------------------------------------------------
# 1. Environment setup -- must run before any application imports
# ---------------------------------------------------------------------------

os.environ.setdefault("DATAGUARD_DEV_MODE", "1")

# ---------------------------------------------------------------------------
# Application imports (after env vars are set)
# ---------------------------------------------------------------------------

from dataguard.config.settings import EngineSettings  # noqa: E402
from dataguard.lib.encryption import Classification, CryptoVault, VaultConfig  # noqa: E402
from dataguard.models.base import Base  # noqa: E402
from dataguard.models.records import DataType, ProtectedRecord  # noqa: E402
from dataguard.models.tables import DLPRuleRow, ProtectedRecordRow  # noqa: E402, F401
from dataguard.services.memory_store import InMemoryRecordStore, InMemoryRuleStore  # noqa: E402
from dataguard.services.protection_service import DataProtectionEngine  # noqa: E402
from dataguard.services.sql_store import SqlAlchemyRecordStore, SqlAlchemyRuleStore  # noqa: E402

TEST_MASTER_KEY = b"test-master-key-for-dataguard!!!"  # exactly 32 bytes
FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock frozen at a fixed instant; advance() moves it forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


# ---------------------------------------------------------------------------
# 2. Crypto
# ---------------------------------------------------------------------------

@pytest.fixture()
def master_key():
    return TEST_MASTER_KEY


@pytest.fixture()
def vault(master_key):
    """CryptoVault with the deterministic test master key."""
    return CryptoVault(VaultConfig.from_master_key(master_key))


# ---------------------------------------------------------------------------
# 3. Clock
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# 4. Stores
# ---------------------------------------------------------------------------

@pytest.fixture()
def record_store():
    return InMemoryRecordStore()


@pytest.fixture()
def rule_store():
    return InMemoryRuleStore()


@pytest.fixture()
def sql_engine():
    """
    In-memory SQLite engine shared across threads.

    A fresh database is created for every test that requests this fixture.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(sql_engine):
    return sessionmaker(bind=sql_engine, expire_on_commit=False)


@pytest.fixture()
def sql_record_store(session_factory):
    return SqlAlchemyRecordStore(session_factory)


@pytest.fixture()
def sql_rule_store(session_factory):
    return SqlAlchemyRuleStore(session_factory)


# ---------------------------------------------------------------------------
# 5. Engine
# ---------------------------------------------------------------------------

@pytest.fixture()
def settings():
    return EngineSettings()


@pytest.fixture()
def engine(vault, record_store, rule_store, settings, clock):
    """DataProtectionEngine over in-memory stores with a frozen clock."""
    return DataProtectionEngine(vault, record_store, rule_store, settings=settings, clock=clock)


@pytest.fixture()
def sql_backed_engine(vault, sql_record_store, sql_rule_store, settings, clock):
    """DataProtectionEngine over SQLite stores with a frozen clock."""
    return DataProtectionEngine(
        vault, sql_record_store, sql_rule_store, settings=settings, clock=clock
    )


# ---------------------------------------------------------------------------
# 6. Factories
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_record():
    """
    Factory for ProtectedRecord instances with placeholder ciphertext.

    Usage:
        record = make_record(id="rec-2", owner_id="alice", integrity_hash="1" * 64)
    """
    def _make(**overrides) -> ProtectedRecord:
        values = dict(
            id="rec-1",
            owner_id="owner",
            data_type=DataType.DOCUMENT,
            classification=Classification.CONFIDENTIAL,
            ciphertext="Y2lwaGVydGV4dA==",
            wrapped_key="abcdef0123456789:d3JhcHBlZA==",
            algorithm_id="aes-256-gcm+a256kw",
            integrity_hash="0" * 64,
            retention_period_days=30,
            retention_expiry=FIXED_NOW + timedelta(days=30),
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
        )
        values.update(overrides)
        return ProtectedRecord(**values)

    return _make
