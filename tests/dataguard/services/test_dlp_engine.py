"""
Tests for the DLP rule engine: administration, evaluation and statistics.

Evaluation tests run against both the in-memory and the SQLite rule store.
"""

from __future__ import annotations

import threading

import pytest

from dataguard.lib.encryption import Classification
from dataguard.lib.exceptions import NotFoundError, ValidationError
from dataguard.models.dlp_rule import FinalAction, RuleAction, Severity
from dataguard.services.dlp_engine import RuleEngine

CARD = "4111-1111-1111-1111"


@pytest.fixture(params=["memory", "sql"])
def rules(request, clock):
    store = request.getfixturevalue("rule_store" if request.param == "memory" else "sql_rule_store")
    return RuleEngine(store, clock=clock)


def definition(**overrides):
    data = {
        "name": "Card numbers",
        "pattern_type": "credit_card",
        "action": "block",
        "classification_scope": ["confidential", "restricted"],
        "severity": "high",
    }
    data.update(overrides)
    return data


# =============================================================================
# Administration
# =============================================================================


class TestCreateRule:
    def test_created_at_version_one(self, rules, clock):
        rule = rules.create_rule(definition(), created_by="admin")
        assert rule.version == 1
        assert rule.statistics.total_matches == 0
        assert rule.created_at == clock.now
        assert rule.created_by == "admin"
        assert rules.get_rule(rule.id) == rule

    def test_invalid_definition_stores_nothing(self, rules):
        with pytest.raises(ValidationError):
            rules.create_rule(definition(action="quarantine"))
        assert rules.list_rules() == []

    def test_get_unknown(self, rules):
        with pytest.raises(NotFoundError):
            rules.get_rule("missing")


class TestUpdateRule:
    def test_version_counts_every_modification(self, rules):
        """Creation is version 1; each later change adds exactly one."""
        rule = rules.create_rule(definition())
        rules.update_rule(rule.id, {"severity": "critical"}, modified_by="admin")
        rules.set_enabled(rule.id, False)
        rules.set_enabled(rule.id, True)
        rules.reset_statistics(rule.id)
        assert rules.get_rule(rule.id).version == 5

    def test_patch_merges_over_current(self, rules, clock):
        rule = rules.create_rule(definition(description="cards"))
        clock.advance(minutes=5)
        updated = rules.update_rule(rule.id, {"action": "warn"}, modified_by="admin")
        assert updated.action == RuleAction.WARN
        assert updated.description == "cards"
        assert updated.severity == Severity.HIGH
        assert updated.created_at == rule.created_at
        assert updated.updated_at == clock.now
        assert updated.last_modified_by == "admin"

    @pytest.mark.parametrize("patch", [{}, {"version": 7}, {"statistics": {}}, {"id": "x"}, {"created_by": "me"}])
    def test_rejected_patch(self, rules, patch):
        rule = rules.create_rule(definition())
        with pytest.raises(ValidationError):
            rules.update_rule(rule.id, patch)
        assert rules.get_rule(rule.id).version == 1

    def test_patch_producing_invalid_rule(self, rules):
        rule = rules.create_rule(definition())
        with pytest.raises(ValidationError):
            rules.update_rule(rule.id, {"pattern_type": "regex"})
        assert rules.get_rule(rule.id).version == 1

    def test_update_unknown(self, rules):
        with pytest.raises(NotFoundError):
            rules.update_rule("missing", {"name": "Renamed rule"})

    def test_update_keeps_statistics(self, rules):
        rule = rules.create_rule(definition())
        rules.evaluate(CARD, {}, Classification.CONFIDENTIAL)
        updated = rules.update_rule(rule.id, {"name": "Renamed rule"})
        assert updated.statistics.total_matches == 1


class TestEnableAndReset:
    def test_disable_keeps_statistics(self, rules):
        rule = rules.create_rule(definition())
        rules.evaluate(CARD, {}, Classification.CONFIDENTIAL)
        disabled = rules.set_enabled(rule.id, False)
        assert not disabled.enabled
        assert disabled.statistics.blocked_count == 1

    def test_reset_statistics(self, rules):
        rule = rules.create_rule(definition())
        rules.evaluate(CARD, {}, Classification.CONFIDENTIAL)
        reset = rules.reset_statistics(rule.id, modified_by="admin")
        assert reset.statistics.total_matches == 0
        assert reset.statistics.last_triggered_at is None
        assert reset.version == 2
        assert reset.last_modified_by == "admin"

    def test_reset_unknown(self, rules):
        with pytest.raises(NotFoundError):
            rules.reset_statistics("missing")


class TestListRules:
    def test_ordering_and_filters(self, rules, clock):
        low = rules.create_rule(definition(name="Low rule", severity="low", classification_scope=["internal"]))
        clock.advance(seconds=1)
        critical = rules.create_rule(definition(name="Critical rule", severity="critical"))
        clock.advance(seconds=1)
        off = rules.create_rule(definition(name="Disabled rule", enabled=False))

        assert [r.id for r in rules.list_rules()] == [critical.id, off.id, low.id]
        assert [r.id for r in rules.list_rules(enabled=False)] == [off.id]
        assert [r.id for r in rules.list_rules(classification=Classification.INTERNAL)] == [low.id]


# =============================================================================
# Evaluation
# =============================================================================


class TestEvaluate:
    def test_no_rules_allows(self, rules):
        result = rules.evaluate("anything", {}, Classification.RESTRICTED)
        assert result.final_action == FinalAction.ALLOW
        assert result.matched_rules == ()
        assert not result.blocked

    def test_most_severe_action_wins(self, rules, clock):
        warn = rules.create_rule(
            definition(name="Keyword warn", pattern_type="keyword", pattern="invoice", action="warn", severity="critical")
        )
        clock.advance(seconds=1)
        block = rules.create_rule(definition())
        result = rules.evaluate(f"invoice for {CARD}", {}, Classification.CONFIDENTIAL)

        assert result.final_action == FinalAction.BLOCK
        assert result.matched_rule_ids == (warn.id, block.id)
        assert result.blocking_rule.rule_id == block.id

    def test_statistics_once_per_evaluation(self, rules, clock):
        """Several occurrences in one payload count as a single trigger."""
        rule = rules.create_rule(definition())
        result = rules.evaluate(f"{CARD} and {CARD}", {}, Classification.CONFIDENTIAL)
        assert result.matched_rules[0].match_count == 2

        stats = rules.get_rule(rule.id).statistics
        assert stats.total_matches == 1
        assert stats.blocked_count == 1
        assert stats.last_triggered_at == clock.now

    def test_outside_classification_scope(self, rules):
        rule = rules.create_rule(definition())
        result = rules.evaluate(CARD, {}, Classification.PUBLIC)
        assert result.final_action == FinalAction.ALLOW
        assert rules.get_rule(rule.id).statistics.total_matches == 0

    def test_disabled_rule_never_fires(self, rules):
        rules.create_rule(definition(enabled=False))
        assert rules.evaluate(CARD, {}, Classification.CONFIDENTIAL).final_action == FinalAction.ALLOW

    def test_scoped_rule(self, rules):
        rules.create_rule(definition(scope="department", scope_value="finance"))
        assert not rules.evaluate(CARD, {}, Classification.CONFIDENTIAL).blocked
        assert not rules.evaluate(CARD, {"departmentId": "eng"}, Classification.CONFIDENTIAL).blocked
        assert rules.evaluate(CARD, {"departmentId": "finance"}, Classification.CONFIDENTIAL).blocked

    def test_conditions_must_all_hold(self, rules):
        rules.create_rule(
            definition(
                conditions=[
                    {"field": "channel", "operator": "equals", "value": "email"},
                    {"field": "size", "operator": "greater_than", "value": 10},
                ]
            )
        )
        ctx = {"channel": "email", "size": 5}
        assert not rules.evaluate(CARD, ctx, Classification.CONFIDENTIAL).blocked
        ctx["size"] = 50
        assert rules.evaluate(CARD, ctx, Classification.CONFIDENTIAL).blocked

    def test_exception_suppresses_rule(self, rules):
        """A holding exception means the rule does not fire and is not counted."""
        rule = rules.create_rule(
            definition(exceptions=[{"field": "userId", "operator": "equals", "value": "auditor"}])
        )
        result = rules.evaluate(CARD, {"userId": "auditor"}, Classification.CONFIDENTIAL)
        assert result.final_action == FinalAction.ALLOW
        assert rules.get_rule(rule.id).statistics.total_matches == 0

    def test_malformed_regex_rule_never_fires(self, rules):
        rules.create_rule(definition(pattern_type="regex", pattern="("))
        assert rules.evaluate("(", {}, Classification.CONFIDENTIAL).final_action == FinalAction.ALLOW

    def test_concurrent_evaluations_lose_no_counts(self, rule_store, clock):
        rules = RuleEngine(rule_store, clock=clock)
        rule = rules.create_rule(definition(action="warn"))
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            rules.evaluate(CARD, {}, Classification.CONFIDENTIAL)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stats = rules.get_rule(rule.id).statistics
        assert stats.total_matches == 8
        assert stats.warned_count == 8


class TestMostTriggered:
    def test_orders_by_total_matches(self, rules):
        cards = rules.create_rule(definition())
        ssn = rules.create_rule(definition(name="SSN", pattern_type="ssn", action="log"))
        rules.create_rule(definition(name="Never fires", pattern_type="keyword", pattern="zzz"))

        rules.evaluate("123-45-6789", {}, Classification.CONFIDENTIAL)
        rules.evaluate("123-45-6789", {}, Classification.CONFIDENTIAL)
        rules.evaluate(CARD, {}, Classification.CONFIDENTIAL)

        assert [r.id for r in rules.most_triggered()] == [ssn.id, cards.id]
        assert [r.id for r in rules.most_triggered(limit=1)] == [ssn.id]


# =============================================================================
# Dry run
# =============================================================================


class TestTestRule:
    def test_stored_rule_is_not_counted(self, rules):
        rule = rules.create_rule(definition())
        preview = rules.test_rule(rule, f"pay {CARD}")
        assert preview.would_trigger
        assert preview.matches == (CARD,)
        assert rules.get_rule(rule.id).statistics.total_matches == 0
        assert rules.get_rule(rule.id).version == 1

    def test_unsaved_definition(self, rules):
        preview = rules.test_rule(
            definition(pattern_type="keyword", pattern="secret", action="warn"),
            "top SECRET plan",
        )
        assert preview.would_trigger
        assert preview.to_dict()["action"] == "warn"
        assert rules.list_rules() == []

    def test_default_context_is_content(self, rules):
        preview = rules.test_rule(
            definition(
                pattern_type="keyword",
                pattern="plan",
                conditions=[{"field": "content", "operator": "contains", "value": "draft"}],
            ),
            "draft plan",
        )
        assert preview.conditions_met
        assert preview.would_trigger

    def test_exception_reported(self, rules):
        preview = rules.test_rule(
            definition(exceptions=[{"field": "env", "operator": "equals", "value": "test"}]),
            CARD,
            context={"env": "test"},
        )
        assert preview.match_count == 1
        assert preview.exceptions_met
        assert not preview.would_trigger

    def test_invalid_regex_reported(self, rules):
        preview = rules.test_rule(definition(pattern_type="regex", pattern="(unclosed"), "(unclosed")
        assert not preview.pattern_valid
        assert not preview.would_trigger
