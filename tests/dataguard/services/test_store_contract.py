"""
Behaviour every RecordStore and RuleStore adapter must share.

Each test runs once against the in-memory store and once against SQLite.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from dataguard.lib.encryption import Classification
from dataguard.lib.exceptions import (
    DuplicateContentError,
    NotFoundError,
    StateError,
    ValidationError,
)
from dataguard.models.dlp_rule import (
    DLPRule,
    PatternType,
    RuleAction,
    RuleStatistics,
)
from dataguard.models.records import AccessGrant, DataType, GrantPermission


@pytest.fixture(params=["memory", "sql"])
def records(request):
    return request.getfixturevalue("record_store" if request.param == "memory" else "sql_record_store")


@pytest.fixture(params=["memory", "sql"])
def rule_backend(request):
    return request.getfixturevalue("rule_store" if request.param == "memory" else "sql_rule_store")


def read_grant(grantee: str, record) -> AccessGrant:
    return AccessGrant(
        grantee,
        frozenset({GrantPermission.READ}),
        record.owner_id,
        record.created_at,
        expires_at=record.created_at + timedelta(days=1),
    )


# =============================================================================
# Record Store
# =============================================================================


class TestRecordInsert:
    def test_roundtrip(self, records, make_record):
        record = make_record()
        records.insert(record)
        assert records.get(record.id) == record

    def test_get_unknown(self, records):
        assert records.get("missing") is None

    def test_duplicate_active_content(self, records, make_record):
        records.insert(make_record(id="first"))
        with pytest.raises(DuplicateContentError) as exc_info:
            records.insert(make_record(id="second"))
        assert exc_info.value.existing_record_id == "first"

    def test_same_content_other_owner(self, records, make_record):
        records.insert(make_record(id="first"))
        records.insert(make_record(id="second", owner_id="someone-else"))
        assert records.get("second") is not None

    def test_deleted_record_frees_content(self, records, make_record, clock):
        records.insert(make_record(id="first"))
        records.mutate("first", lambda r: replace(r, is_deleted=True, deleted_at=clock.now, deleted_by="owner"))
        assert records.find_active_by_hash("owner", "0" * 64) is None
        records.insert(make_record(id="second"))
        assert records.find_active_by_hash("owner", "0" * 64).id == "second"

    def test_existing_id(self, records, make_record):
        records.insert(make_record())
        with pytest.raises(ValidationError):
            records.insert(make_record(integrity_hash="1" * 64))


class TestRecordMutate:
    def test_applies_and_bumps_revision(self, records, make_record):
        record = records.insert(make_record())
        updated = records.mutate(record.id, lambda r: replace(r, grants=(read_grant("bob", r),)))
        assert updated.revision == record.revision + 1
        assert records.get(record.id) == updated

    def test_same_object_skips_write(self, records, make_record):
        record = records.insert(make_record())
        assert records.mutate(record.id, lambda r: r).revision == record.revision
        assert records.get(record.id).revision == record.revision

    def test_unknown(self, records):
        with pytest.raises(NotFoundError):
            records.mutate("missing", lambda r: r)

    def test_callback_error_writes_nothing(self, records, make_record):
        record = records.insert(make_record())

        def fail(_):
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            records.mutate(record.id, fail)
        assert records.get(record.id) == record

    @pytest.mark.parametrize(
        "change",
        [
            {"ciphertext": "b3RoZXI="},
            {"owner_id": "mallory"},
            {"classification": Classification.PUBLIC},
            {"retention_period_days": 31},
        ],
    )
    def test_immutable_fields(self, records, make_record, change):
        record = records.insert(make_record())
        with pytest.raises(StateError):
            records.mutate(record.id, lambda r: replace(r, **change))
        assert records.get(record.id) == record

    def test_wrapped_key_may_change(self, records, make_record):
        record = records.insert(make_record())
        updated = records.mutate(record.id, lambda r: replace(r, wrapped_key="fedcba9876543210:bmV3"))
        assert updated.master_key_id == "fedcba9876543210"

    def test_soft_delete_is_final(self, records, make_record, clock):
        record = records.insert(make_record())
        records.mutate(record.id, lambda r: replace(r, is_deleted=True, deleted_at=clock.now))
        with pytest.raises(StateError):
            records.mutate(record.id, lambda r: replace(r, is_deleted=False))


class TestRecordQueries:
    def test_list_filters_and_order(self, records, make_record, clock):
        records.insert(make_record(id="old", integrity_hash="1" * 64))
        records.insert(
            make_record(
                id="new",
                integrity_hash="2" * 64,
                created_at=clock.now + timedelta(minutes=1),
                classification=Classification.RESTRICTED,
                data_type=DataType.FILE,
            )
        )
        records.insert(make_record(id="other", owner_id="bob", integrity_hash="3" * 64))
        records.insert(make_record(id="gone", integrity_hash="4" * 64, is_deleted=True))

        assert [r.id for r in records.list_records(owner_id="owner")] == ["new", "old"]
        assert [r.id for r in records.list_records(owner_id="owner", include_deleted=True)] == [
            "new",
            "old",
            "gone",
        ]
        assert [r.id for r in records.list_records(classification=Classification.RESTRICTED)] == ["new"]
        assert [r.id for r in records.list_records(data_type=DataType.FILE)] == ["new"]
        assert {r.id for r in records.list_records(include_deleted=True)} == {"old", "new", "other", "gone"}

    def test_find_expiring(self, records, make_record, clock):
        records.insert(make_record(id="later", integrity_hash="1" * 64, retention_expiry=clock.now + timedelta(days=20)))
        records.insert(make_record(id="soon", integrity_hash="2" * 64, retention_expiry=clock.now + timedelta(days=2)))
        records.insert(make_record(id="far", integrity_hash="3" * 64, retention_expiry=clock.now + timedelta(days=90)))
        records.insert(
            make_record(id="gone", integrity_hash="4" * 64, retention_expiry=clock.now, is_deleted=True)
        )
        expiring = records.find_expiring(clock.now + timedelta(days=30))
        assert [r.id for r in expiring] == ["soon", "later"]

    def test_record_ids(self, records, make_record):
        records.insert(make_record(id="a", integrity_hash="1" * 64))
        records.insert(make_record(id="b", integrity_hash="2" * 64, is_deleted=True))
        assert sorted(records.record_ids()) == ["a", "b"]


# =============================================================================
# Rule Store
# =============================================================================


def make_rule(now, rule_id: str = "rule-1", **overrides) -> DLPRule:
    values = dict(
        id=rule_id,
        name="Keyword rule",
        pattern="secret",
        pattern_type=PatternType.KEYWORD,
        action=RuleAction.WARN,
        classification_scope=frozenset({Classification.INTERNAL}),
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return DLPRule(**values)


class TestRuleStore:
    def test_roundtrip(self, rule_backend, clock):
        rule = make_rule(clock.now)
        rule_backend.add(rule)
        assert rule_backend.get(rule.id) == rule

    def test_duplicate_id(self, rule_backend, clock):
        rule_backend.add(make_rule(clock.now))
        with pytest.raises(ValidationError):
            rule_backend.add(make_rule(clock.now))

    def test_list_enabled_filter(self, rule_backend, clock):
        rule_backend.add(make_rule(clock.now, "on"))
        rule_backend.add(make_rule(clock.now, "off", enabled=False))
        assert [r.id for r in rule_backend.list_rules(enabled=True)] == ["on"]
        assert [r.id for r in rule_backend.list_rules(enabled=False)] == ["off"]
        assert len(rule_backend.list_rules()) == 2

    def test_mutate_bumps_version_and_keeps_statistics(self, rule_backend, clock):
        rule_backend.add(make_rule(clock.now))
        rule_backend.increment_statistics("rule-1", RuleAction.WARN, clock.now)
        updated = rule_backend.mutate(
            "rule-1",
            lambda r: replace(r, name="Renamed", version=99, statistics=RuleStatistics()),
        )
        assert updated.name == "Renamed"
        assert updated.version == 2
        assert updated.statistics.warned_count == 1

    def test_increment_statistics(self, rule_backend, clock):
        rule_backend.add(make_rule(clock.now))
        rule_backend.increment_statistics("rule-1", RuleAction.BLOCK, clock.now)
        rule_backend.increment_statistics("rule-1", RuleAction.LOG, clock.now)
        stats = rule_backend.get("rule-1").statistics
        assert (stats.total_matches, stats.blocked_count, stats.logged_count) == (2, 1, 1)
        assert stats.last_triggered_at == clock.now
        assert rule_backend.get("rule-1").version == 1

    def test_reset_statistics(self, rule_backend, clock):
        rule_backend.add(make_rule(clock.now))
        rule_backend.increment_statistics("rule-1", RuleAction.WARN, clock.now)
        reset = rule_backend.reset_statistics("rule-1", "admin", clock.now)
        assert reset.statistics == RuleStatistics()
        assert reset.version == 2

    @pytest.mark.parametrize("operation", ["mutate", "increment", "reset"])
    def test_unknown_rule(self, rule_backend, clock, operation):
        with pytest.raises(NotFoundError):
            if operation == "mutate":
                rule_backend.mutate("missing", lambda r: r)
            elif operation == "increment":
                rule_backend.increment_statistics("missing", RuleAction.LOG, clock.now)
            else:
                rule_backend.reset_statistics("missing", None, clock.now)
