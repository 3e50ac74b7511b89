"""
Services for DataGuard.

Services:
    - RuleEngine: DLP screening, rule administration and statistics
    - RetentionScheduler: Retention expiry and status reporting
    - AuditTrail: Per-record append-only events
    - DataProtectionEngine: Submit/retrieve/share/revoke/soft-delete facade

Storage:
    - store_ports: RecordStore / RuleStore interfaces
    - memory_store: In-memory adapters (development, tests)
    - sql_store: SQLAlchemy adapters
"""

from .audit_trail import AuditTrail
from .dlp_engine import EvaluationResult, RuleEngine, RuleMatch, RulePreview
from .memory_store import InMemoryRecordStore, InMemoryRuleStore
from .protection_service import DataProtectionEngine, RotationReport, SubmitResult
from .retention import RetentionReport, RetentionScheduler, RetentionStatus
from .store_ports import RecordStore, RuleStore

__all__ = [
    "AuditTrail",
    "DataProtectionEngine",
    "EvaluationResult",
    "InMemoryRecordStore",
    "InMemoryRuleStore",
    "RecordStore",
    "RetentionReport",
    "RetentionScheduler",
    "RetentionStatus",
    "RotationReport",
    "RuleEngine",
    "RuleMatch",
    "RulePreview",
    "RuleStore",
    "SubmitResult",
]
