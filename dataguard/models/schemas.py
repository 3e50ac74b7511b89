"""
Pydantic input schemas for DataGuard.

Validates everything an administrative or service caller hands to the
engine before it reaches the domain model. Pydantic errors are converted to
DataGuard's ValidationError without echoing input values, so plaintext never
ends up in an error message.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from dataguard.lib.encryption import Classification
from dataguard.lib.exceptions import ValidationError
from dataguard.models.dlp_rule import (
    Condition,
    ConditionOperator,
    PatternType,
    RuleAction,
    RuleScope,
    Severity,
)
from dataguard.models.records import DataType, GrantPermission


def validation_error_from(exc: PydanticValidationError) -> ValidationError:
    """Summarize a pydantic error as 'field: message; ...' without input values."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "input"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return ValidationError("; ".join(parts))


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# =============================================================================
# DLP Rule Schemas
# =============================================================================


class ConditionSpec(BaseModel):
    """Condition or exception as supplied by an administrator."""

    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1, max_length=200)
    operator: ConditionOperator
    value: str = Field(..., max_length=1000)

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (int, float)):
            return str(v)
        return v

    def to_condition(self) -> Condition:
        return Condition(field=self.field, operator=self.operator, value=self.value)


class RuleDefinition(BaseModel):
    """Request schema for creating (or fully re-validating) a DLP rule."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=3, max_length=100)
    description: str = Field("", max_length=500)
    pattern: str = ""
    pattern_type: PatternType = PatternType.REGEX
    action: RuleAction
    classification_scope: frozenset[Classification] = Field(..., min_length=1)
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    scope: RuleScope = RuleScope.GLOBAL
    scope_value: str | None = None
    conditions: list[ConditionSpec] = Field(default_factory=list)
    exceptions: list[ConditionSpec] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    @field_validator("name", "pattern", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("pattern_type", mode="before")
    @classmethod
    def _parse_pattern_type(cls, v: Any) -> Any:
        return PatternType.parse(v) if isinstance(v, str) else v

    @field_validator("classification_scope", mode="before")
    @classmethod
    def _parse_classifications(cls, v: Any) -> Any:
        if isinstance(v, (str, Classification)):
            v = [v]
        if isinstance(v, (list, tuple, set, frozenset)):
            return [Classification.parse(item) for item in v]
        return v

    @model_validator(mode="after")
    def _check_consistency(self) -> RuleDefinition:
        if not self.pattern_type.is_builtin and not self.pattern:
            raise ValueError(f"pattern is required for pattern_type {self.pattern_type.value}")
        if self.scope == RuleScope.GLOBAL:
            self.scope_value = None
        elif not self.scope_value:
            raise ValueError(f"scope_value is required for scope {self.scope.value}")
        return self

    @classmethod
    def parse(cls, data: RuleDefinition | dict[str, Any]) -> RuleDefinition:
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise validation_error_from(e) from None


# =============================================================================
# Record Schemas
# =============================================================================


class SubmitRequest(BaseModel):
    """Request schema for submitting a payload for protection."""

    owner_id: str = Field(..., min_length=1, max_length=200)
    classification: Classification
    plaintext: str = Field(..., min_length=1, repr=False)
    data_type: DataType = DataType.DOCUMENT
    retention_period_days: int | None = Field(None, ge=1)
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("classification", mode="before")
    @classmethod
    def _parse_classification(cls, v: Any) -> Any:
        return Classification.parse(v) if isinstance(v, str) else v


class ShareRequest(BaseModel):
    """Request schema for granting a non-owner access to a record."""

    grantee_id: str = Field(..., min_length=1, max_length=200)
    permissions: frozenset[GrantPermission] = Field(..., min_length=1)
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


def parse_model(model: type[BaseModel], **data: Any) -> Any:
    """Validate keyword data against `model`, raising DataGuard's ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise validation_error_from(e) from None
