"""
In-memory storage adapters.

Thread-safe implementations for development and testing. Every record and
rule has its own threading.Lock so writes to different records never
contend; a store-level lock guards inserts and the duplicate index.

Everything is lost on restart.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from dataguard.lib.encryption import Classification
from dataguard.lib.exceptions import DuplicateContentError, NotFoundError, ValidationError
from dataguard.models.dlp_rule import DLPRule, RuleAction, RuleStatistics
from dataguard.models.records import DataType, ProtectedRecord
from dataguard.services.store_ports import (
    RecordMutation,
    RecordStore,
    RuleMutation,
    RuleStore,
    check_record_write,
)


class InMemoryRecordStore(RecordStore):
    """
    In-memory record storage.

    Uses a dict of frozen records with one lock per record.
    """

    def __init__(self):
        self._records: dict[str, ProtectedRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        # (owner_id, integrity_hash) -> id of the active record
        self._active_hashes: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def insert(self, record: ProtectedRecord) -> ProtectedRecord:
        key = (record.owner_id, record.integrity_hash)
        with self._lock:
            if record.id in self._records:
                raise ValidationError(f"Record id {record.id!r} already exists")
            existing_id = self._active_hashes.get(key)
            if existing_id is not None and not record.is_deleted:
                raise DuplicateContentError(existing_id)
            self._records[record.id] = record
            self._locks[record.id] = threading.Lock()
            if not record.is_deleted:
                self._active_hashes[key] = record.id
            return record

    def get(self, record_id: str) -> ProtectedRecord | None:
        return self._records.get(record_id)

    def find_active_by_hash(self, owner_id: str, integrity_hash: str) -> ProtectedRecord | None:
        record_id = self._active_hashes.get((owner_id, integrity_hash))
        if record_id is None:
            return None
        return self._records.get(record_id)

    def mutate(self, record_id: str, fn: RecordMutation) -> ProtectedRecord:
        lock = self._locks.get(record_id)
        if lock is None:
            raise NotFoundError("record", record_id)

        with lock:
            current = self._records[record_id]
            updated = fn(current)
            if updated is current:
                return current
            check_record_write(current, updated)
            stored = replace(updated, revision=current.revision + 1)
            with self._lock:
                self._records[record_id] = stored
                if stored.is_deleted and not current.is_deleted:
                    self._active_hashes.pop((stored.owner_id, stored.integrity_hash), None)
            return stored

    def list_records(
        self,
        owner_id: str | None = None,
        classification: Classification | None = None,
        data_type: DataType | None = None,
        include_deleted: bool = False,
    ) -> list[ProtectedRecord]:
        records = [
            r
            for r in list(self._records.values())
            if (owner_id is None or r.owner_id == owner_id)
            and (classification is None or r.classification == classification)
            and (data_type is None or r.data_type == data_type)
            and (include_deleted or not r.is_deleted)
        ]
        records.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return records

    def find_expiring(self, cutoff: datetime) -> list[ProtectedRecord]:
        records = [
            r
            for r in list(self._records.values())
            if not r.is_deleted and r.retention_expiry <= cutoff
        ]
        records.sort(key=lambda r: (r.retention_expiry, r.id))
        return records

    def record_ids(self) -> list[str]:
        return list(self._records)


class InMemoryRuleStore(RuleStore):
    """In-memory DLP rule storage with per-rule locks."""

    def __init__(self):
        self._rules: dict[str, DLPRule] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def add(self, rule: DLPRule) -> DLPRule:
        with self._lock:
            if rule.id in self._rules:
                raise ValidationError(f"Rule id {rule.id!r} already exists")
            self._rules[rule.id] = rule
            self._locks[rule.id] = threading.Lock()
            return rule

    def get(self, rule_id: str) -> DLPRule | None:
        return self._rules.get(rule_id)

    def list_rules(self, enabled: bool | None = None) -> list[DLPRule]:
        rules = [
            r for r in list(self._rules.values())
            if enabled is None or r.enabled == enabled
        ]
        rules.sort(key=lambda r: (r.created_at, r.id))
        return rules

    def _rule_lock(self, rule_id: str) -> threading.Lock:
        lock = self._locks.get(rule_id)
        if lock is None:
            raise NotFoundError("rule", rule_id)
        return lock

    def mutate(self, rule_id: str, fn: RuleMutation) -> DLPRule:
        with self._rule_lock(rule_id):
            current = self._rules[rule_id]
            updated = fn(current)
            stored = replace(
                updated,
                id=current.id,
                created_at=current.created_at,
                statistics=current.statistics,
                version=current.version + 1,
            )
            self._rules[rule_id] = stored
            return stored

    def increment_statistics(self, rule_id: str, action: RuleAction, at: datetime) -> None:
        with self._rule_lock(rule_id):
            current = self._rules[rule_id]
            self._rules[rule_id] = replace(
                current, statistics=current.statistics.record(action, at)
            )

    def reset_statistics(self, rule_id: str, modified_by: str | None, at: datetime) -> DLPRule:
        with self._rule_lock(rule_id):
            current = self._rules[rule_id]
            stored = replace(
                current,
                statistics=RuleStatistics(),
                version=current.version + 1,
                updated_at=at,
                last_modified_by=modified_by,
            )
            self._rules[rule_id] = stored
            return stored
