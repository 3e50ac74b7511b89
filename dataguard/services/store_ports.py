"""
Storage port interfaces for DataGuard.

The engine depends only on these interfaces; adapters (in-memory,
SQLAlchemy) implement them and are injected at construction time.

Atomicity contract:
- RecordStore.mutate() is a single atomic read-modify-write per record.
  The callback receives the current record and returns the new one (or the
  same object to skip the write). Concurrent mutations of one record are
  serialized or retried; none is lost.
- RecordStore.insert() checks for an active duplicate (same owner and
  integrity hash) and inserts in one atomic step.
- RuleStore.increment_statistics() is an atomic counter increment.
- RuleStore.mutate() and reset_statistics() bump the rule version by
  exactly one per successful write.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from dataguard.lib.encryption import Classification
from dataguard.lib.exceptions import StateError
from dataguard.models.dlp_rule import DLPRule, RuleAction
from dataguard.models.records import DataType, ProtectedRecord

RecordMutation = Callable[[ProtectedRecord], ProtectedRecord]
RuleMutation = Callable[[DLPRule], DLPRule]


def check_record_write(current: ProtectedRecord, updated: ProtectedRecord) -> None:
    """
    Validate a record transition before it is persisted.

    Raises:
        StateError: An immutable field changed or a deleted record was restored
    """
    changed = current.changed_immutable_fields(updated)
    if changed:
        raise StateError(f"Immutable record fields cannot change: {', '.join(changed)}")
    if current.is_deleted and not updated.is_deleted:
        raise StateError("Soft-deleted records cannot be restored")
    if len(updated.events) < len(current.events) or updated.events[: len(current.events)] != current.events:
        raise StateError("Audit events are append-only")


# =============================================================================
# Record Store
# =============================================================================


class RecordStore(ABC):
    """Storage interface for protected records with embedded grants and events."""

    @abstractmethod
    def insert(self, record: ProtectedRecord) -> ProtectedRecord:
        """
        Persist a new record.

        Raises:
            DuplicateContentError: The owner already has an active record
                with the same integrity hash
            StoreUnavailable: The backend could not complete the write
        """
        ...

    @abstractmethod
    def get(self, record_id: str) -> ProtectedRecord | None:
        """Get a record by id (soft-deleted records included)."""
        ...

    @abstractmethod
    def find_active_by_hash(self, owner_id: str, integrity_hash: str) -> ProtectedRecord | None:
        ...

    @abstractmethod
    def mutate(self, record_id: str, fn: RecordMutation) -> ProtectedRecord:
        """
        Atomically apply `fn` to the current record and persist the result.

        The stored revision is incremented on every write. Exceptions raised
        by `fn` propagate and nothing is written.

        Raises:
            NotFoundError: No record with that id
            StateError: `fn` changed an immutable field
            StoreUnavailable: The write could not be committed
        """
        ...

    @abstractmethod
    def list_records(
        self,
        owner_id: str | None = None,
        classification: Classification | None = None,
        data_type: DataType | None = None,
        include_deleted: bool = False,
    ) -> list[ProtectedRecord]:
        """Records matching every given filter, newest first."""
        ...

    @abstractmethod
    def find_expiring(self, cutoff: datetime) -> list[ProtectedRecord]:
        """Active records whose retention expiry is at or before `cutoff`, soonest first."""
        ...

    @abstractmethod
    def record_ids(self) -> list[str]:
        ...


# =============================================================================
# Rule Store
# =============================================================================


class RuleStore(ABC):
    """Storage interface for DLP rules and their statistics."""

    @abstractmethod
    def add(self, rule: DLPRule) -> DLPRule:
        ...

    @abstractmethod
    def get(self, rule_id: str) -> DLPRule | None:
        ...

    @abstractmethod
    def list_rules(self, enabled: bool | None = None) -> list[DLPRule]:
        ...

    @abstractmethod
    def mutate(self, rule_id: str, fn: RuleMutation) -> DLPRule:
        """
        Atomically apply `fn` and persist the result with version + 1.

        Statistics returned by `fn` are ignored; the stored counters are
        kept so concurrent triggers are never lost.

        Raises:
            NotFoundError: No rule with that id
            StoreUnavailable: The write could not be committed
        """
        ...

    @abstractmethod
    def increment_statistics(self, rule_id: str, action: RuleAction, at: datetime) -> None:
        """Add one trigger for `action` and set last_triggered_at."""
        ...

    @abstractmethod
    def reset_statistics(self, rule_id: str, modified_by: str | None, at: datetime) -> DLPRule:
        """Zero every counter, clear last_triggered_at, version + 1."""
        ...
