"""
DLP Rule Engine for DataGuard.

Screens a payload and its context against the enabled, classification-scoped
rules. A rule fires when:

    pattern matches  AND  every condition holds  AND  no exception holds

The final action is the most severe action among firing rules
(block > warn > log > allow). Every firing rule's statistics are
incremented exactly once per evaluation, however many times its pattern
occurs in the payload.

Rule administration (create, patch, enable/disable, statistics reset) goes
through the same engine so the version invariant lives in one place: a rule
is created at version 1 and each modification adds exactly 1.

Usage:
    engine = RuleEngine(InMemoryRuleStore())
    engine.create_rule({"name": "Cards", "pattern_type": "credit_card",
                        "action": "block", "classification_scope": ["confidential"]})
    result = engine.evaluate("4111-1111-1111-1111", {}, Classification.CONFIDENTIAL)
    result.final_action  # FinalAction.BLOCK
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

import structlog

from dataguard.lib.encryption import Classification
from dataguard.lib.exceptions import NotFoundError, ValidationError
from dataguard.models.dlp_rule import (
    SCOPE_CONTEXT_KEYS,
    DLPRule,
    FinalAction,
    RuleAction,
    RuleScope,
    Severity,
)
from dataguard.models.schemas import RuleDefinition
from dataguard.services.dlp_patterns import (
    ABSENT,
    evaluate_condition,
    find_matches,
    is_valid_pattern,
    lookup_field,
    stringify,
)
from dataguard.services.store_ports import RuleStore

logger = structlog.get_logger()

Clock = Callable[[], datetime]

# Fields a patch may not touch; RuleDefinition rejects unknown keys as well
_PROTECTED_RULE_FIELDS = frozenset({"id", "version", "statistics", "created_at", "created_by"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Result Types
# =============================================================================


@dataclass(frozen=True)
class RuleMatch:
    """A rule that fired during one evaluation."""

    rule_id: str
    name: str
    action: RuleAction
    severity: Severity
    match_count: int


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of screening one payload."""

    matched_rules: tuple[RuleMatch, ...]
    final_action: FinalAction

    @property
    def blocked(self) -> bool:
        return self.final_action == FinalAction.BLOCK

    @property
    def blocking_rule(self) -> RuleMatch | None:
        """First (most severe) firing block rule, if any."""
        for match in self.matched_rules:
            if match.action == RuleAction.BLOCK:
                return match
        return None

    @property
    def matched_rule_ids(self) -> tuple[str, ...]:
        return tuple(m.rule_id for m in self.matched_rules)


@dataclass(frozen=True)
class RulePreview:
    """Side-effect-free dry run of one rule against a sample."""

    matches: tuple[str, ...]
    match_count: int
    pattern_valid: bool
    conditions_met: bool
    exceptions_met: bool
    would_trigger: bool
    action: RuleAction

    def to_dict(self) -> dict[str, Any]:
        return {
            "matches": list(self.matches),
            "match_count": self.match_count,
            "pattern_valid": self.pattern_valid,
            "conditions_met": self.conditions_met,
            "exceptions_met": self.exceptions_met,
            "would_trigger": self.would_trigger,
            "action": self.action.value,
        }


# =============================================================================
# Rule Predicates
# =============================================================================


def scope_matches(rule: DLPRule, context: Mapping[str, Any]) -> bool:
    if rule.scope == RuleScope.GLOBAL:
        return True
    value = lookup_field(context, SCOPE_CONTEXT_KEYS[rule.scope])
    if value is ABSENT:
        return False
    return stringify(value) == rule.scope_value


def rule_applies(rule: DLPRule, context: Mapping[str, Any], classification: Classification) -> bool:
    """Whether the rule is a candidate for this classification and context."""
    return (
        rule.enabled
        and classification in rule.classification_scope
        and scope_matches(rule, context)
    )


def conditions_hold(rule: DLPRule, context: Mapping[str, Any]) -> bool:
    return all(evaluate_condition(c, context) for c in rule.conditions)


def exception_holds(rule: DLPRule, context: Mapping[str, Any]) -> bool:
    return any(evaluate_condition(e, context) for e in rule.exceptions)


def build_rule(
    definition: RuleDefinition,
    *,
    rule_id: str,
    now: datetime,
    created_by: str | None = None,
) -> DLPRule:
    """Materialize a validated definition as a version-1 rule."""
    return DLPRule(
        id=rule_id,
        name=definition.name,
        description=definition.description,
        pattern=definition.pattern,
        pattern_type=definition.pattern_type,
        action=definition.action,
        classification_scope=frozenset(definition.classification_scope),
        severity=definition.severity,
        enabled=definition.enabled,
        scope=definition.scope,
        scope_value=definition.scope_value,
        conditions=tuple(c.to_condition() for c in definition.conditions),
        exceptions=tuple(e.to_condition() for e in definition.exceptions),
        tags=tuple(definition.tags),
        created_at=now,
        updated_at=now,
        created_by=created_by,
        last_modified_by=created_by,
    )


def rule_to_definition_data(rule: DLPRule) -> dict[str, Any]:
    """Editable fields of a rule in RuleDefinition input form."""
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
        "conditions": [
            {"field": c.field, "operator": c.operator.value, "value": c.value}
            for c in rule.conditions
        ],
        "exceptions": [
            {"field": e.field, "operator": e.operator.value, "value": e.value}
            for e in rule.exceptions
        ],
        "tags": list(rule.tags),
    }


# =============================================================================
# Rule Engine
# =============================================================================


class RuleEngine:
    """
    Evaluates payloads against DLP rules and administers the rule set.

    The engine holds no rule state of its own; every read goes to the
    RuleStore so concurrent evaluations always see the current rules, and
    statistics are applied through the store's atomic increment.
    """

    def __init__(self, rule_store: RuleStore, clock: Clock | None = None):
        self._store = rule_store
        self._clock = clock or _utcnow

    # ---------------------------------------------------------------------
    # Administration
    # ---------------------------------------------------------------------

    def create_rule(
        self,
        definition: RuleDefinition | Mapping[str, Any],
        created_by: str | None = None,
    ) -> DLPRule:
        """
        Validate and store a new rule at version 1.

        Raises:
            ValidationError: The definition is malformed
        """
        parsed = RuleDefinition.parse(dict(definition) if isinstance(definition, Mapping) else definition)
        rule = build_rule(parsed, rule_id=str(uuid.uuid4()), now=self._clock(), created_by=created_by)
        self._store.add(rule)
        logger.info(
            "dlp_rule_created",
            rule_id=rule.id,
            pattern_type=rule.pattern_type.value,
            action=rule.action.value,
            severity=rule.severity.value,
        )
        return rule

    def get_rule(self, rule_id: str) -> DLPRule:
        rule = self._store.get(rule_id)
        if rule is None:
            raise NotFoundError("rule", rule_id)
        return rule

    def list_rules(
        self,
        enabled: bool | None = None,
        classification: Classification | None = None,
    ) -> list[DLPRule]:
        rules = self._store.list_rules(enabled=enabled)
        if classification is not None:
            rules = [r for r in rules if classification in r.classification_scope]
        return sorted(rules, key=DLPRule.sort_key)

    def update_rule(
        self,
        rule_id: str,
        patch: Mapping[str, Any],
        modified_by: str | None = None,
    ) -> DLPRule:
        """
        Apply a partial update and bump the version by exactly one.

        The patch is merged over the current editable fields and the result
        is validated as a whole, so a patch can never leave the rule in a
        state create_rule would reject.

        Raises:
            ValidationError: Empty patch, protected field, or invalid result
            NotFoundError: Unknown rule id
        """
        if not patch:
            raise ValidationError("Rule patch must change at least one field")
        protected = sorted(_PROTECTED_RULE_FIELDS.intersection(patch))
        if protected:
            raise ValidationError(f"Fields cannot be modified: {', '.join(protected)}")

        def apply(current: DLPRule) -> DLPRule:
            merged = {**rule_to_definition_data(current), **patch}
            definition = RuleDefinition.parse(merged)
            rebuilt = build_rule(
                definition,
                rule_id=current.id,
                now=current.created_at,
                created_by=current.created_by,
            )
            return replace(
                rebuilt,
                updated_at=self._clock(),
                last_modified_by=modified_by,
            )

        rule = self._store.mutate(rule_id, apply)
        logger.info(
            "dlp_rule_updated",
            rule_id=rule_id,
            version=rule.version,
            fields=sorted(patch),
        )
        return rule

    def set_enabled(self, rule_id: str, enabled: bool, modified_by: str | None = None) -> DLPRule:
        """Enable or disable a rule. Statistics are kept either way."""
        rule = self._store.mutate(
            rule_id,
            lambda current: replace(
                current,
                enabled=enabled,
                updated_at=self._clock(),
                last_modified_by=modified_by,
            ),
        )
        logger.info("dlp_rule_toggled", rule_id=rule_id, enabled=enabled, version=rule.version)
        return rule

    def reset_statistics(self, rule_id: str, modified_by: str | None = None) -> DLPRule:
        rule = self._store.reset_statistics(rule_id, modified_by, self._clock())
        logger.info("dlp_rule_statistics_reset", rule_id=rule_id, version=rule.version)
        return rule

    def most_triggered(self, limit: int = 10) -> list[DLPRule]:
        """Enabled rules ordered by total matches, highest first."""
        rules = [r for r in self._store.list_rules(enabled=True) if r.statistics.total_matches > 0]
        rules.sort(key=lambda r: (-r.statistics.total_matches, r.id))
        return rules[:limit]

    # ---------------------------------------------------------------------
    # Evaluation
    # ---------------------------------------------------------------------

    def candidates(self, context: Mapping[str, Any], classification: Classification) -> list[DLPRule]:
        """Enabled rules applicable to this context, in evaluation order."""
        rules = [
            r for r in self._store.list_rules(enabled=True)
            if rule_applies(r, context, classification)
        ]
        rules.sort(key=DLPRule.sort_key)
        return rules

    def evaluate(
        self,
        payload: str,
        context: Mapping[str, Any],
        classification: Classification,
    ) -> EvaluationResult:
        """
        Screen a payload and record statistics for every firing rule.

        Args:
            payload: Plaintext to screen
            context: Caller attributes referenced by scope and condition paths
            classification: Classification the payload would be stored under

        Returns:
            EvaluationResult with firing rules in evaluation order
        """
        fired: list[RuleMatch] = []
        final_action = FinalAction.ALLOW

        for rule in self.candidates(context, classification):
            matches = find_matches(payload, rule.pattern, rule.pattern_type)
            if not matches:
                continue
            if not conditions_hold(rule, context):
                continue
            if exception_holds(rule, context):
                logger.debug("dlp_rule_suppressed_by_exception", rule_id=rule.id)
                continue

            fired.append(
                RuleMatch(
                    rule_id=rule.id,
                    name=rule.name,
                    action=rule.action,
                    severity=rule.severity,
                    match_count=len(matches),
                )
            )
            candidate_action = FinalAction.from_rule_action(rule.action)
            if candidate_action.rank > final_action.rank:
                final_action = candidate_action

        for match in fired:
            self.record_trigger(match.rule_id, match.action)

        if fired:
            logger.info(
                "dlp_evaluation_completed",
                classification=classification.value,
                final_action=final_action.value,
                matched_rule_ids=[m.rule_id for m in fired],
            )
        return EvaluationResult(matched_rules=tuple(fired), final_action=final_action)

    def record_trigger(self, rule_id: str, action: RuleAction) -> None:
        """Atomically count one trigger of `action` for the rule."""
        self._store.increment_statistics(rule_id, action, self._clock())
        logger.info("dlp_rule_triggered", rule_id=rule_id, action=action.value)

    def test_rule(
        self,
        rule: DLPRule | RuleDefinition | Mapping[str, Any],
        sample: str,
        context: Mapping[str, Any] | None = None,
    ) -> RulePreview:
        """
        Dry-run a stored or unsaved rule against a sample. Never touches statistics.

        The default context is {"content": sample}.
        """
        if not isinstance(rule, DLPRule):
            definition = RuleDefinition.parse(dict(rule) if isinstance(rule, Mapping) else rule)
            rule = build_rule(definition, rule_id="preview", now=self._clock())

        ctx = context if context is not None else {"content": sample}
        matches = find_matches(sample, rule.pattern, rule.pattern_type)
        met = conditions_hold(rule, ctx)
        excepted = exception_holds(rule, ctx)
        return RulePreview(
            matches=tuple(matches),
            match_count=len(matches),
            pattern_valid=is_valid_pattern(rule.pattern, rule.pattern_type),
            conditions_met=met,
            exceptions_met=excepted,
            would_trigger=bool(matches) and met and not excepted,
            action=rule.action,
        )


__all__ = [
    "EvaluationResult",
    "RuleEngine",
    "RuleMatch",
    "RulePreview",
    "build_rule",
    "conditions_hold",
    "exception_holds",
    "rule_applies",
]
