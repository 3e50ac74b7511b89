"""
SQLAlchemy storage adapters.

Synchronous SQLAlchemy 2.0 implementations for production persistence.

Record writes use optimistic compare-and-swap on the `revision` column:

    UPDATE protected_records SET ..., revision = :old + 1
    WHERE id = :id AND revision = :old

A lost race re-reads the row and re-applies the mutation, up to
`max_retries` times; after that the write fails with StoreUnavailable.
Rule edits do the same on `version`; rule statistics are incremented in
place (`SET total_matches = total_matches + 1`) so concurrent triggers
never overwrite each other.

Compatible with:
- SQLite (tests, single node)
- PostgreSQL
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import Engine, create_engine, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from dataguard.lib.encryption import Classification
from dataguard.lib.exceptions import (
    DuplicateContentError,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)
from dataguard.models.base import Base
from dataguard.models.dlp_rule import (
    Condition,
    ConditionOperator,
    DLPRule,
    PatternType,
    RuleAction,
    RuleScope,
    RuleStatistics,
    Severity,
)
from dataguard.models.records import (
    AccessGrant,
    AuditEvent,
    DataType,
    ProtectedRecord,
)
from dataguard.models.tables import DLPRuleRow, ProtectedRecordRow
from dataguard.services.store_ports import (
    RecordMutation,
    RecordStore,
    RuleMutation,
    RuleStore,
    check_record_write,
)

logger = structlog.get_logger()

DEFAULT_MAX_RETRIES = 5


def _utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every stored datetime is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except OperationalError as e:
        logger.error("store_unavailable", operation=operation, error=str(e.orig))
        raise StoreUnavailable(f"Store unavailable during {operation}") from e


# =============================================================================
# Converters
# =============================================================================


def _grants_from_json(record_id: str, raw: list[dict[str, Any]] | None) -> tuple[AccessGrant, ...]:
    grants = []
    for item in raw or []:
        try:
            grants.append(AccessGrant.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            # A grant that cannot be parsed can never authorize anything
            logger.warning("stored_grant_malformed", record_id=record_id, error=str(e))
    return tuple(grants)


def record_row_to_record(row: ProtectedRecordRow) -> ProtectedRecord:
    """Convert SQLAlchemy row to domain record."""
    return ProtectedRecord(
        id=row.id,
        owner_id=row.owner_id,
        data_type=DataType(row.data_type),
        classification=Classification(row.classification),
        ciphertext=row.ciphertext,
        wrapped_key=row.wrapped_key,
        algorithm_id=row.algorithm_id,
        integrity_hash=row.integrity_hash,
        retention_period_days=row.retention_period_days,
        retention_expiry=_utc(row.retention_expiry),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        is_deleted=row.is_deleted,
        deleted_at=_utc(row.deleted_at),
        deleted_by=row.deleted_by,
        grants=_grants_from_json(row.id, row.grants),
        events=tuple(AuditEvent.from_dict(e) for e in row.events or []),
        revision=row.revision,
    )


def _mutable_record_values(record: ProtectedRecord) -> dict[str, Any]:
    return {
        "wrapped_key": record.wrapped_key,
        "is_deleted": record.is_deleted,
        "deleted_at": record.deleted_at,
        "deleted_by": record.deleted_by,
        "grants": [g.to_dict() for g in record.grants],
        "events": [e.to_dict() for e in record.events],
        "updated_at": record.updated_at,
    }


def record_to_row(record: ProtectedRecord) -> ProtectedRecordRow:
    """Convert domain record to SQLAlchemy row."""
    return ProtectedRecordRow(
        id=record.id,
        owner_id=record.owner_id,
        data_type=record.data_type.value,
        classification=record.classification.value,
        ciphertext=record.ciphertext,
        algorithm_id=record.algorithm_id,
        integrity_hash=record.integrity_hash,
        retention_period_days=record.retention_period_days,
        retention_expiry=record.retention_expiry,
        created_at=record.created_at,
        revision=record.revision,
        **_mutable_record_values(record),
    )


def _conditions_to_json(conditions: tuple[Condition, ...]) -> list[dict[str, str]]:
    return [
        {"field": c.field, "operator": c.operator.value, "value": c.value}
        for c in conditions
    ]


def _conditions_from_json(raw: list[dict[str, Any]] | None) -> tuple[Condition, ...]:
    return tuple(
        Condition(field=c["field"], operator=ConditionOperator(c["operator"]), value=str(c["value"]))
        for c in raw or []
    )


def rule_row_to_rule(row: DLPRuleRow) -> DLPRule:
    """Convert SQLAlchemy row to domain rule."""
    return DLPRule(
        id=row.id,
        name=row.name,
        description=row.description or "",
        pattern=row.pattern or "",
        pattern_type=PatternType(row.pattern_type),
        action=RuleAction(row.action),
        classification_scope=frozenset(Classification(c) for c in row.classification_scope),
        severity=Severity(row.severity),
        enabled=row.enabled,
        scope=RuleScope(row.scope),
        scope_value=row.scope_value,
        conditions=_conditions_from_json(row.conditions),
        exceptions=_conditions_from_json(row.exceptions),
        tags=tuple(row.tags or ()),
        statistics=RuleStatistics(
            total_matches=row.total_matches,
            blocked_count=row.blocked_count,
            warned_count=row.warned_count,
            logged_count=row.logged_count,
            last_triggered_at=_utc(row.last_triggered_at),
        ),
        version=row.version,
        created_by=row.created_by,
        last_modified_by=row.last_modified_by,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _editable_rule_values(rule: DLPRule) -> dict[str, Any]:
    return {
        "name": rule.name,
        "description": rule.description,
        "pattern": rule.pattern,
        "pattern_type": rule.pattern_type.value,
        "action": rule.action.value,
        "classification_scope": sorted(c.value for c in rule.classification_scope),
        "severity": rule.severity.value,
        "enabled": rule.enabled,
        "scope": rule.scope.value,
        "scope_value": rule.scope_value,
        "conditions": _conditions_to_json(rule.conditions),
        "exceptions": _conditions_to_json(rule.exceptions),
        "tags": list(rule.tags),
        "last_modified_by": rule.last_modified_by,
        "updated_at": rule.updated_at,
    }


def rule_to_row(rule: DLPRule) -> DLPRuleRow:
    """Convert domain rule to SQLAlchemy row."""
    stats = rule.statistics
    return DLPRuleRow(
        id=rule.id,
        created_by=rule.created_by,
        created_at=rule.created_at,
        version=rule.version,
        total_matches=stats.total_matches,
        blocked_count=stats.blocked_count,
        warned_count=stats.warned_count,
        logged_count=stats.logged_count,
        last_triggered_at=stats.last_triggered_at,
        **_editable_rule_values(rule),
    )


# =============================================================================
# Record Store
# =============================================================================


class SqlAlchemyRecordStore(RecordStore):
    """SQLAlchemy implementation of record storage."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self._session_factory = session_factory
        self._max_retries = max_retries

    @staticmethod
    def _active_id(session: Session, owner_id: str, integrity_hash: str) -> str | None:
        return session.scalar(
            select(ProtectedRecordRow.id).where(
                ProtectedRecordRow.owner_id == owner_id,
                ProtectedRecordRow.integrity_hash == integrity_hash,
                ProtectedRecordRow.is_deleted.is_(False),
            )
        )

    def insert(self, record: ProtectedRecord) -> ProtectedRecord:
        with _store_errors("record_insert"), self._session_factory() as session:
            existing_id = self._active_id(session, record.owner_id, record.integrity_hash)
            if existing_id is not None:
                raise DuplicateContentError(existing_id)
            session.add(record_to_row(record))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                # Lost the race against a concurrent insert of the same content
                existing_id = self._active_id(session, record.owner_id, record.integrity_hash)
                if existing_id is not None:
                    raise DuplicateContentError(existing_id) from e
                raise ValidationError(f"Record id {record.id!r} already exists") from e
        return record

    def get(self, record_id: str) -> ProtectedRecord | None:
        with _store_errors("record_get"), self._session_factory() as session:
            row = session.get(ProtectedRecordRow, record_id)
            if row is None:
                return None
            return record_row_to_record(row)

    def find_active_by_hash(self, owner_id: str, integrity_hash: str) -> ProtectedRecord | None:
        with _store_errors("record_find_by_hash"), self._session_factory() as session:
            row = session.scalars(
                select(ProtectedRecordRow).where(
                    ProtectedRecordRow.owner_id == owner_id,
                    ProtectedRecordRow.integrity_hash == integrity_hash,
                    ProtectedRecordRow.is_deleted.is_(False),
                )
            ).first()
            return record_row_to_record(row) if row is not None else None

    def mutate(self, record_id: str, fn: RecordMutation) -> ProtectedRecord:
        for attempt in range(1, self._max_retries + 1):
            with _store_errors("record_mutate"), self._session_factory() as session:
                row = session.get(ProtectedRecordRow, record_id)
                if row is None:
                    raise NotFoundError("record", record_id)
                current = record_row_to_record(row)
                updated = fn(current)
                if updated is current:
                    return current
                check_record_write(current, updated)

                result = session.execute(
                    update(ProtectedRecordRow)
                    .where(
                        ProtectedRecordRow.id == record_id,
                        ProtectedRecordRow.revision == current.revision,
                    )
                    .values(revision=current.revision + 1, **_mutable_record_values(updated))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.commit()
                    return replace(updated, revision=current.revision + 1)
                session.rollback()
            logger.debug("record_write_conflict", record_id=record_id, attempt=attempt)

        logger.warning("record_write_retries_exhausted", record_id=record_id, retries=self._max_retries)
        raise StoreUnavailable(f"Record {record_id!r} is under contention; write not applied")

    def list_records(
        self,
        owner_id: str | None = None,
        classification: Classification | None = None,
        data_type: DataType | None = None,
        include_deleted: bool = False,
    ) -> list[ProtectedRecord]:
        stmt = select(ProtectedRecordRow)
        if owner_id is not None:
            stmt = stmt.where(ProtectedRecordRow.owner_id == owner_id)
        if classification is not None:
            stmt = stmt.where(ProtectedRecordRow.classification == classification.value)
        if data_type is not None:
            stmt = stmt.where(ProtectedRecordRow.data_type == data_type.value)
        if not include_deleted:
            stmt = stmt.where(ProtectedRecordRow.is_deleted.is_(False))
        stmt = stmt.order_by(ProtectedRecordRow.created_at.desc(), ProtectedRecordRow.id.desc())

        with _store_errors("record_list"), self._session_factory() as session:
            return [record_row_to_record(row) for row in session.scalars(stmt)]

    def find_expiring(self, cutoff: datetime) -> list[ProtectedRecord]:
        stmt = (
            select(ProtectedRecordRow)
            .where(
                ProtectedRecordRow.is_deleted.is_(False),
                ProtectedRecordRow.retention_expiry <= cutoff.astimezone(UTC),
            )
            .order_by(ProtectedRecordRow.retention_expiry, ProtectedRecordRow.id)
        )
        with _store_errors("record_find_expiring"), self._session_factory() as session:
            return [record_row_to_record(row) for row in session.scalars(stmt)]

    def record_ids(self) -> list[str]:
        with _store_errors("record_ids"), self._session_factory() as session:
            return list(session.scalars(select(ProtectedRecordRow.id)))


# =============================================================================
# Rule Store
# =============================================================================


class SqlAlchemyRuleStore(RuleStore):
    """SQLAlchemy implementation of DLP rule storage."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self._session_factory = session_factory
        self._max_retries = max_retries

    def add(self, rule: DLPRule) -> DLPRule:
        with _store_errors("rule_add"), self._session_factory() as session:
            session.add(rule_to_row(rule))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValidationError(f"Rule id {rule.id!r} already exists") from e
        return rule

    def get(self, rule_id: str) -> DLPRule | None:
        with _store_errors("rule_get"), self._session_factory() as session:
            row = session.get(DLPRuleRow, rule_id)
            return rule_row_to_rule(row) if row is not None else None

    def list_rules(self, enabled: bool | None = None) -> list[DLPRule]:
        stmt = select(DLPRuleRow)
        if enabled is not None:
            stmt = stmt.where(DLPRuleRow.enabled.is_(enabled))
        stmt = stmt.order_by(DLPRuleRow.created_at, DLPRuleRow.id)
        with _store_errors("rule_list"), self._session_factory() as session:
            return [rule_row_to_rule(row) for row in session.scalars(stmt)]

    def mutate(self, rule_id: str, fn: RuleMutation) -> DLPRule:
        for attempt in range(1, self._max_retries + 1):
            with _store_errors("rule_mutate"), self._session_factory() as session:
                row = session.get(DLPRuleRow, rule_id)
                if row is None:
                    raise NotFoundError("rule", rule_id)
                current = rule_row_to_rule(row)
                updated = fn(current)

                result = session.execute(
                    update(DLPRuleRow)
                    .where(DLPRuleRow.id == rule_id, DLPRuleRow.version == current.version)
                    .values(version=current.version + 1, **_editable_rule_values(updated))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.commit()
                    session.expire_all()
                    return rule_row_to_rule(session.get(DLPRuleRow, rule_id))
                session.rollback()
            logger.debug("rule_write_conflict", rule_id=rule_id, attempt=attempt)

        logger.warning("rule_write_retries_exhausted", rule_id=rule_id, retries=self._max_retries)
        raise StoreUnavailable(f"Rule {rule_id!r} is under contention; write not applied")

    def increment_statistics(self, rule_id: str, action: RuleAction, at: datetime) -> None:
        counter = {
            RuleAction.BLOCK: DLPRuleRow.blocked_count,
            RuleAction.WARN: DLPRuleRow.warned_count,
            RuleAction.LOG: DLPRuleRow.logged_count,
        }[action]
        with _store_errors("rule_increment_statistics"), self._session_factory() as session:
            result = session.execute(
                update(DLPRuleRow)
                .where(DLPRuleRow.id == rule_id)
                .values(
                    {
                        DLPRuleRow.total_matches: DLPRuleRow.total_matches + 1,
                        counter: counter + 1,
                        DLPRuleRow.last_triggered_at: at,
                    }
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError("rule", rule_id)
            session.commit()

    def reset_statistics(self, rule_id: str, modified_by: str | None, at: datetime) -> DLPRule:
        with _store_errors("rule_reset_statistics"), self._session_factory() as session:
            result = session.execute(
                update(DLPRuleRow)
                .where(DLPRuleRow.id == rule_id)
                .values(
                    {
                        DLPRuleRow.total_matches: 0,
                        DLPRuleRow.blocked_count: 0,
                        DLPRuleRow.warned_count: 0,
                        DLPRuleRow.logged_count: 0,
                        DLPRuleRow.last_triggered_at: None,
                        DLPRuleRow.version: DLPRuleRow.version + 1,
                        DLPRuleRow.last_modified_by: modified_by,
                        DLPRuleRow.updated_at: at,
                    }
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError("rule", rule_id)
            session.commit()
            return rule_row_to_rule(session.get(DLPRuleRow, rule_id))


# =============================================================================
# Factory
# =============================================================================


@dataclass
class SqlStores:
    """Record and rule stores sharing one engine."""

    records: SqlAlchemyRecordStore
    rules: SqlAlchemyRuleStore
    engine: Engine

    def close(self) -> None:
        self.engine.dispose()


def create_sql_stores(
    database_url: str,
    *,
    timeout_seconds: float = 5.0,
    max_retries: int = DEFAULT_MAX_RETRIES,
    echo: bool = False,
    create_tables: bool = True,
    engine: Engine | None = None,
) -> SqlStores:
    """
    Create SQLAlchemy record and rule stores.

    Args:
        database_url: Database URL (e.g. "sqlite:///dataguard.db")
        timeout_seconds: Lock wait / pool checkout timeout, surfaced as StoreUnavailable
        max_retries: Compare-and-swap attempts per write
        echo: Enable SQL logging
        create_tables: Create tables if they do not exist
        engine: Use an existing engine instead of creating one
    """
    if engine is None:
        if database_url.startswith("sqlite"):
            engine = create_engine(
                database_url,
                echo=echo,
                connect_args={"timeout": timeout_seconds, "check_same_thread": False},
            )
        else:
            engine = create_engine(database_url, echo=echo, pool_timeout=timeout_seconds)

    if create_tables:
        Base.metadata.create_all(engine)

    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    logger.info("sql_stores_initialized", dialect=engine.dialect.name)
    return SqlStores(
        records=SqlAlchemyRecordStore(session_factory, max_retries=max_retries),
        rules=SqlAlchemyRuleStore(session_factory, max_retries=max_retries),
        engine=engine,
    )
