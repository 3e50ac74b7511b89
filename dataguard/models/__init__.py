"""
Models package for DataGuard.

Domain dataclasses, pydantic input schemas and SQLAlchemy tables.

Usage:
    from dataguard.models import ProtectedRecord, DLPRule, AccessGrant
"""

from dataguard.models.base import Base
from dataguard.models.dlp_rule import (
    Condition,
    ConditionOperator,
    DLPRule,
    FinalAction,
    PatternType,
    RuleAction,
    RuleScope,
    RuleStatistics,
    Severity,
)
from dataguard.models.records import (
    AccessGrant,
    AuditAction,
    AuditEvent,
    AuditOutcome,
    DataType,
    GrantPermission,
    ProtectedRecord,
)
from dataguard.models.tables import DLPRuleRow, ProtectedRecordRow

__all__ = [
    # Base
    "Base",
    # Records
    "AccessGrant",
    "AuditAction",
    "AuditEvent",
    "AuditOutcome",
    "DataType",
    "GrantPermission",
    "ProtectedRecord",
    # DLP
    "Condition",
    "ConditionOperator",
    "DLPRule",
    "FinalAction",
    "PatternType",
    "RuleAction",
    "RuleScope",
    "RuleStatistics",
    "Severity",
    # Tables
    "DLPRuleRow",
    "ProtectedRecordRow",
]
