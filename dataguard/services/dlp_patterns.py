"""
Pattern matchers and condition evaluation for DLP rules.

Pattern dispatch is exhaustive over PatternType: a new pattern kind that is
not handled here fails type checking instead of silently never matching.

Context lookup walks a dot path ("request.user.departmentId") through
nested mappings and returns either a scalar (str, int, float, bool) or the
ABSENT marker. Missing keys, None and non-scalar leaves are all ABSENT, and
an absent field makes every operator evaluate to False.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Final, assert_never

import structlog

from dataguard.models.dlp_rule import Condition, ConditionOperator, PatternType

logger = structlog.get_logger()


# =============================================================================
# Built-in detectors
# =============================================================================

BUILTIN_PATTERNS: Final[dict[PatternType, re.Pattern[str]]] = {
    PatternType.CREDIT_CARD: re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
    PatternType.SSN: re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    PatternType.EMAIL: re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    PatternType.PHONE: re.compile(
        r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"
    ),
}


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str] | None:
    """Compile a stored regex case-insensitively. Returns None when malformed."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning("dlp_pattern_invalid", error=str(e))
        return None


def is_valid_pattern(pattern: str, pattern_type: PatternType) -> bool:
    if pattern_type == PatternType.REGEX:
        return compile_pattern(pattern) is not None
    return True


def find_matches(payload: str, pattern: str, pattern_type: PatternType) -> list[str]:
    """All occurrences of the pattern in the payload (empty when none or malformed)."""
    match pattern_type:
        case PatternType.REGEX:
            compiled = compile_pattern(pattern)
            if compiled is None:
                return []
            return [m.group(0) for m in compiled.finditer(payload)]
        case PatternType.KEYWORD:
            if not pattern:
                return []
            needle = pattern.lower()
            haystack = payload.lower()
            found = []
            start = haystack.find(needle)
            while start != -1:
                found.append(payload[start:start + len(needle)])
                start = haystack.find(needle, start + len(needle))
            return found
        case (
            PatternType.CREDIT_CARD
            | PatternType.SSN
            | PatternType.EMAIL
            | PatternType.PHONE
        ):
            return [m.group(0) for m in BUILTIN_PATTERNS[pattern_type].finditer(payload)]
        case _:
            assert_never(pattern_type)


def pattern_matches(payload: str, pattern: str, pattern_type: PatternType) -> bool:
    match pattern_type:
        case PatternType.REGEX:
            compiled = compile_pattern(pattern)
            return compiled is not None and compiled.search(payload) is not None
        case PatternType.KEYWORD:
            return bool(pattern) and pattern.lower() in payload.lower()
        case (
            PatternType.CREDIT_CARD
            | PatternType.SSN
            | PatternType.EMAIL
            | PatternType.PHONE
        ):
            return BUILTIN_PATTERNS[pattern_type].search(payload) is not None
        case _:
            assert_never(pattern_type)


# =============================================================================
# Context lookup
# =============================================================================


class _Absent:
    """Marker for a context path that does not resolve to a scalar."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Final = _Absent()

ContextValue = str | int | float | bool


def lookup_field(context: Mapping[str, Any], path: str) -> ContextValue | _Absent:
    """Resolve a dot path into nested mappings."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return ABSENT
        current = current[part]
    if isinstance(current, (str, bool, int, float)):
        return current
    return ABSENT


def stringify(value: ContextValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_number(value: ContextValue | str) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    """Evaluate one condition against the context. Never raises."""
    actual = lookup_field(context, condition.field)
    if actual is ABSENT:
        return False

    operator = condition.operator
    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left = to_number(actual)
        right = to_number(condition.value)
        if left is None or right is None:
            return False
        if operator == ConditionOperator.GREATER_THAN:
            return left > right
        return left < right

    field_value = stringify(actual).lower()
    expected = condition.value.lower()
    match operator:
        case ConditionOperator.EQUALS:
            return field_value == expected
        case ConditionOperator.NOT_EQUALS:
            return field_value != expected
        case ConditionOperator.CONTAINS:
            return expected in field_value
        case ConditionOperator.NOT_CONTAINS:
            return expected not in field_value
        case ConditionOperator.REGEX:
            compiled = compile_pattern(condition.value)
            return compiled is not None and compiled.search(field_value) is not None
        case _:
            logger.warning("dlp_condition_operator_unknown", operator=str(operator))
            return False
