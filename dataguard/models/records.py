"""
Protected record model for DataGuard.

A ProtectedRecord is the persisted form of a submitted payload: the sealed
ciphertext, the wrapped record key, retention data, the embedded access
grants and the append-only audit events.

Records are frozen dataclasses. Stores apply changes by building a new
record with dataclasses.replace() inside an atomic read-modify-write, and
reject any write that changes a field listed in IMMUTABLE_RECORD_FIELDS.

Data Classification: per record (public | internal | confidential | restricted)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from dataguard.lib.encryption import Classification

ContextScalar = str | int | float | bool


# =============================================================================
# Enums
# =============================================================================


class DataType(StrEnum):
    """Kind of payload held by a record."""

    DOCUMENT = "document"
    DATABASE_RECORD = "database_record"
    FILE = "file"
    API_DATA = "api_data"
    LOG_DATA = "log_data"


class GrantPermission(StrEnum):
    """Actions a grant can allow on a record."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    SHARE = "share"


ALL_PERMISSIONS: frozenset[GrantPermission] = frozenset(GrantPermission)


class AuditAction(StrEnum):
    """What an audit event documents."""

    CREATED = "created"
    ACCESSED = "accessed"
    SHARED = "shared"
    SHARE_REVOKED = "share_revoked"
    DELETED = "deleted"
    ACCESS_DENIED = "access_denied"
    DECRYPTION_FAILED = "decryption_failed"
    KEY_REWRAPPED = "key_rewrapped"


class AuditOutcome(StrEnum):
    SUCCESS = "success"
    DENIED = "denied"
    FAILED = "failed"


def sanitize_context(context: Mapping[str, Any] | None) -> dict[str, ContextScalar]:
    """Reduce an arbitrary mapping to string/number/bool values; None is dropped."""
    if not context:
        return {}
    clean: dict[str, ContextScalar] = {}
    for key, value in context.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            clean[str(key)] = value
        else:
            clean[str(key)] = str(value)
    return clean


# =============================================================================
# Access Grant
# =============================================================================


@dataclass(frozen=True)
class AccessGrant:
    """
    Time-bounded, permission-scoped authorization for a non-owner.

    Several grants for the same grantee may coexist; each one is evaluated
    on its own.
    """

    grantee_id: str
    permissions: frozenset[GrantPermission]
    granted_by: str
    granted_at: datetime
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "grantee_id": self.grantee_id,
            "permissions": sorted(p.value for p in self.permissions),
            "granted_by": self.granted_by,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AccessGrant:
        """Deserialize from storage. Raises KeyError/ValueError/TypeError when malformed."""
        grantee_id = data["grantee_id"]
        granted_by = data["granted_by"]
        if not isinstance(grantee_id, str) or not isinstance(granted_by, str):
            raise TypeError("grantee_id and granted_by must be strings")
        expires_raw = data.get("expires_at")
        return cls(
            grantee_id=grantee_id,
            permissions=frozenset(GrantPermission(p) for p in data["permissions"]),
            granted_by=granted_by,
            granted_at=datetime.fromisoformat(data["granted_at"]),
            expires_at=datetime.fromisoformat(expires_raw) if expires_raw else None,
        )


# =============================================================================
# Audit Event
# =============================================================================


@dataclass(frozen=True)
class AuditEvent:
    """A single append-only audit trail entry."""

    record_id: str
    timestamp: datetime
    actor_id: str
    action: AuditAction
    outcome: AuditOutcome
    context: Mapping[str, ContextScalar] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "action": self.action.value,
            "outcome": self.outcome.value,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditEvent:
        return cls(
            record_id=data["record_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor_id=data["actor_id"],
            action=AuditAction(data["action"]),
            outcome=AuditOutcome(data["outcome"]),
            context=sanitize_context(data.get("context")),
        )


# =============================================================================
# Protected Record
# =============================================================================

# wrapped_key is absent on purpose: master key rotation re-wraps it.
IMMUTABLE_RECORD_FIELDS: tuple[str, ...] = (
    "id",
    "owner_id",
    "data_type",
    "classification",
    "ciphertext",
    "algorithm_id",
    "integrity_hash",
    "retention_period_days",
    "retention_expiry",
    "created_at",
)


@dataclass(frozen=True)
class ProtectedRecord:
    """
    An encrypted payload with its grants and audit trail.

    Attributes:
        id: Opaque unique id (uuid4 string)
        owner_id: Submitting actor; implicitly holds every permission
        data_type: Kind of payload
        classification: Sensitivity label
        ciphertext: base64 AES-GCM output
        wrapped_key: Record key wrapped under a master key (never listed)
        algorithm_id: Encryption construction id
        integrity_hash: SHA-256 of the plaintext, for dedup and tamper evidence
        retention_period_days: Retention requested at creation
        retention_expiry: created_at + retention_period_days, fixed at creation
        is_deleted: Soft-delete flag
        grants: Embedded access grants
        events: Embedded append-only audit events, oldest first
        revision: Compare-and-swap token, incremented by every store write
    """

    id: str
    owner_id: str
    data_type: DataType
    classification: Classification
    ciphertext: str = field(repr=False)
    wrapped_key: str = field(repr=False)
    algorithm_id: str
    integrity_hash: str
    retention_period_days: int
    retention_expiry: datetime
    created_at: datetime
    updated_at: datetime
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    grants: tuple[AccessGrant, ...] = ()
    events: tuple[AuditEvent, ...] = ()
    revision: int = 1

    @property
    def is_active(self) -> bool:
        return not self.is_deleted

    @property
    def master_key_id(self) -> str:
        return self.wrapped_key.partition(":")[0]

    def changed_immutable_fields(self, other: ProtectedRecord) -> list[str]:
        """Names of immutable fields whose value differs in `other`."""
        return [
            name
            for name in IMMUTABLE_RECORD_FIELDS
            if getattr(self, name) != getattr(other, name)
        ]

    def to_listing(self) -> dict[str, Any]:
        """Listing view. Ciphertext and wrapped key are never included."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "data_type": self.data_type.value,
            "classification": self.classification.value,
            "algorithm_id": self.algorithm_id,
            "integrity_hash": self.integrity_hash,
            "retention_period_days": self.retention_period_days,
            "retention_expiry": self.retention_expiry,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_deleted": self.is_deleted,
            "shared_with": sorted({g.grantee_id for g in self.grants}),
        }
