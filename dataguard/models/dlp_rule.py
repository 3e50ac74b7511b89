"""
DLP Rule model for DataGuard.

A DLPRule screens payloads for one pattern (regex, keyword or a built-in
detector), scoped to a set of classifications and optionally to a
department, user or data type. Conditions (AND) and exceptions (OR) refine
when a matching rule fires.

Versioning: a rule is created at version 1 and every later modification
(patch, enable/disable, statistics reset) increments it by exactly one.
Statistics are never cleared by disabling a rule.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum

from dataguard.lib.encryption import Classification

RECENT_ACTIVITY_DAYS = 7


class PatternType(StrEnum):
    """
    Closed set of pattern kinds.

    Built-in detectors may be written with a "builtin:" prefix
    ("builtin:credit_card"); parse() accepts both spellings.
    """

    REGEX = "regex"
    KEYWORD = "keyword"
    CREDIT_CARD = "credit_card"
    SSN = "ssn"
    EMAIL = "email"
    PHONE = "phone"

    @classmethod
    def parse(cls, value: str | PatternType) -> PatternType:
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text.startswith("builtin:"):
            text = text[len("builtin:"):]
        return cls(text)

    @property
    def is_builtin(self) -> bool:
        return self not in (PatternType.REGEX, PatternType.KEYWORD)


class RuleAction(StrEnum):
    """What a firing rule asks the engine to do."""

    BLOCK = "block"
    WARN = "warn"
    LOG = "log"


class FinalAction(StrEnum):
    """Outcome of an evaluation: the most severe action among firing rules."""

    ALLOW = "allow"
    LOG = "log"
    WARN = "warn"
    BLOCK = "block"

    @property
    def rank(self) -> int:
        return _FINAL_ACTION_RANK[self]

    @classmethod
    def from_rule_action(cls, action: RuleAction) -> FinalAction:
        return cls(action.value)


_FINAL_ACTION_RANK = {
    FinalAction.ALLOW: 0,
    FinalAction.LOG: 1,
    FinalAction.WARN: 2,
    FinalAction.BLOCK: 3,
}


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class RuleScope(StrEnum):
    """Who a rule applies to, beyond its classification scope."""

    GLOBAL = "global"
    DEPARTMENT = "department"
    USER = "user"
    DATA_TYPE = "data_type"


# Context key compared against scope_value for each non-global scope.
SCOPE_CONTEXT_KEYS: dict[RuleScope, str] = {
    RuleScope.DEPARTMENT: "departmentId",
    RuleScope.USER: "userId",
    RuleScope.DATA_TYPE: "dataType",
}


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


@dataclass(frozen=True)
class Condition:
    """
    A predicate over one context field.

    Used both for conditions (all must hold) and exceptions (any one
    suppresses the rule).
    """

    field: str
    operator: ConditionOperator
    value: str


@dataclass(frozen=True)
class RuleStatistics:
    """Trigger counters for a rule."""

    total_matches: int = 0
    blocked_count: int = 0
    warned_count: int = 0
    logged_count: int = 0
    last_triggered_at: datetime | None = None

    def record(self, action: RuleAction, at: datetime) -> RuleStatistics:
        """Counters after one more trigger with `action`."""
        return replace(
            self,
            total_matches=self.total_matches + 1,
            blocked_count=self.blocked_count + (action == RuleAction.BLOCK),
            warned_count=self.warned_count + (action == RuleAction.WARN),
            logged_count=self.logged_count + (action == RuleAction.LOG),
            last_triggered_at=at,
        )

    @property
    def effectiveness(self) -> int:
        """Percentage of matches that were blocked."""
        if self.total_matches == 0:
            return 0
        return round(self.blocked_count / self.total_matches * 100)

    def is_recently_active(self, now: datetime) -> bool:
        if self.last_triggered_at is None:
            return False
        return now - self.last_triggered_at <= timedelta(days=RECENT_ACTIVITY_DAYS)


@dataclass(frozen=True)
class DLPRule:
    """
    A classification-scoped data loss prevention rule.

    Attributes:
        id: Rule id (uuid4 string)
        name: Display name, 3..100 characters
        pattern: Regex or keyword text; ignored by built-in detectors
        pattern_type: Which matcher evaluates the pattern
        action: block | warn | log
        classification_scope: Classifications the rule screens
        severity: Evaluation order, most severe first
        enabled: Disabled rules are never candidates
        scope / scope_value: Optional department, user or data type restriction
        conditions: All must hold for the rule to fire
        exceptions: Any one holding suppresses the rule
        statistics: Trigger counters
        version: 1 at creation, +1 per modification
    """

    id: str
    name: str
    pattern: str
    pattern_type: PatternType
    action: RuleAction
    classification_scope: frozenset[Classification]
    created_at: datetime
    updated_at: datetime
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    scope: RuleScope = RuleScope.GLOBAL
    scope_value: str | None = None
    conditions: tuple[Condition, ...] = ()
    exceptions: tuple[Condition, ...] = ()
    statistics: RuleStatistics = field(default_factory=RuleStatistics)
    version: int = 1
    description: str = ""
    created_by: str | None = None
    last_modified_by: str | None = None
    tags: tuple[str, ...] = ()

    def sort_key(self) -> tuple[int, datetime, str]:
        """Evaluation order: severity desc, then creation order, then id."""
        return (-self.severity.rank, self.created_at, self.id)

    def summary(self) -> dict[str, str | bool | int]:
        return {
            "id": self.id,
            "name": self.name,
            "classification_scope": ",".join(sorted(c.value for c in self.classification_scope)),
            "action": self.action.value,
            "severity": self.severity.value,
            "enabled": self.enabled,
            "version": self.version,
        }
