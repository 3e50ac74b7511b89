"""
Append-only audit trail for DataGuard.

Events live inside their record and are written in the same atomic store
write as the state change they document. There is no update or delete
operation; the store itself rejects any write that rewrites earlier events.

Access events copy `ip` and `userAgent` from the caller context when
present. No other context is copied, so payload content never reaches the
trail.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import structlog

from dataguard.lib.exceptions import NotFoundError
from dataguard.lib.logging import hash_uid
from dataguard.models.records import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    ProtectedRecord,
    sanitize_context,
)
from dataguard.services.store_ports import RecordStore

logger = structlog.get_logger()

# Caller context keys copied into audit events
AUDITED_CONTEXT_KEYS = ("ip", "userAgent")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AuditTrail:
    """
    Builds, appends and queries per-record audit events.

    Args:
        record_store: Store holding the records and their embedded events
        clock: Returns the current UTC time
    """

    def __init__(self, record_store: RecordStore, clock: Callable[[], datetime] | None = None):
        self._store = record_store
        self._clock = clock or _utcnow

    def event(
        self,
        record_id: str,
        actor_id: str,
        action: AuditAction,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        context: Mapping[str, Any] | None = None,
        **details: Any,
    ) -> AuditEvent:
        """Build an event with the audited subset of the caller context plus `details`."""
        audited = {k: context[k] for k in AUDITED_CONTEXT_KEYS if context and k in context}
        audited.update(details)
        return AuditEvent(
            record_id=record_id,
            timestamp=self._clock(),
            actor_id=actor_id,
            action=action,
            outcome=outcome,
            context=sanitize_context(audited),
        )

    @staticmethod
    def append(record: ProtectedRecord, event: AuditEvent) -> ProtectedRecord:
        """Record with `event` appended. Pure; call inside the record's atomic write."""
        return replace(record, events=(*record.events, event))

    def append_to(self, record_id: str, event: AuditEvent) -> ProtectedRecord:
        """Append an event that has no other state change (denials, failures)."""
        record = self._store.mutate(record_id, lambda current: self.append(current, event))
        if event.outcome != AuditOutcome.SUCCESS:
            logger.warning(
                "security_event",
                record_id=record_id,
                action=event.action.value,
                outcome=event.outcome.value,
                actor_hash=hash_uid(event.actor_id),
            )
        return record

    def query(self, record_id: str) -> tuple[AuditEvent, ...]:
        """
        Chronological events for a record, soft-deleted records included.

        Raises:
            NotFoundError: Unknown record id
        """
        record = self._store.get(record_id)
        if record is None:
            raise NotFoundError("record", record_id)
        return tuple(sorted(record.events, key=lambda e: e.timestamp))
