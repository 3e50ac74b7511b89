"""
SQLAlchemy tables for the DataGuard SQL store.

Persisted layout:
- protected_records: one row per record, grants and audit events embedded
  as JSON lists so a single-row write commits a state change together with
  the event that documents it
- dlp_rules: one row per rule, conditions/exceptions embedded as JSON,
  statistics as plain integer columns so they can be incremented in place

Both tables carry an integer token (`revision` / `version`) used for
compare-and-swap updates.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)

from dataguard.models.base import Base


class ProtectedRecordRow(Base):
    """
    Encrypted payload row.

    Data Classification: per row (`classification` column). Rows carry the
    wrapped key; the engine strips it and the ciphertext from every listing
    it returns.
    """

    __tablename__ = "protected_records"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(200), nullable=False, index=True)
    data_type = Column(String(30), nullable=False)
    classification = Column(String(20), nullable=False)

    ciphertext = Column(Text, nullable=False)
    wrapped_key = Column(Text, nullable=False)
    algorithm_id = Column(String(50), nullable=False)
    integrity_hash = Column(String(64), nullable=False)

    retention_period_days = Column(Integer, nullable=False)
    retention_expiry = Column(DateTime(timezone=True), nullable=False)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_by = Column(String(200), nullable=True)

    grants = Column(JSON, nullable=False, default=list)
    events = Column(JSON, nullable=False, default=list)

    revision = Column(Integer, nullable=False, default=1)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        # One active record per owner and content hash
        Index(
            "uq_records_owner_hash_active",
            "owner_id",
            "integrity_hash",
            unique=True,
            sqlite_where=is_deleted.is_(False),
            postgresql_where=is_deleted.is_(False),
        ),
        Index("idx_records_classification", "classification"),
        Index("idx_records_retention_expiry", "retention_expiry"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProtectedRecordRow(id={self.id}, classification={self.classification}, "
            f"revision={self.revision}, deleted={self.is_deleted})>"
        )


class DLPRuleRow(Base):
    """DLP rule row with embedded conditions and in-place statistics counters."""

    __tablename__ = "dlp_rules"

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False, default="")
    pattern = Column(Text, nullable=False, default="")
    pattern_type = Column(String(20), nullable=False)
    action = Column(String(10), nullable=False)
    classification_scope = Column(JSON, nullable=False)
    severity = Column(String(10), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    scope = Column(String(20), nullable=False, default="global")
    scope_value = Column(String(200), nullable=True)
    conditions = Column(JSON, nullable=False, default=list)
    exceptions = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)

    # Statistics
    total_matches = Column(Integer, nullable=False, default=0)
    blocked_count = Column(Integer, nullable=False, default=0)
    warned_count = Column(Integer, nullable=False, default=0)
    logged_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_by = Column(String(200), nullable=True)
    last_modified_by = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_dlp_rules_enabled", "enabled"),
        Index("idx_dlp_rules_scope", "scope", "scope_value"),
        Index("idx_dlp_rules_last_triggered", "last_triggered_at"),
    )

    def __repr__(self) -> str:
        return f"<DLPRuleRow(id={self.id}, name={self.name}, version={self.version})>"
