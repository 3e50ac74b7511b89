"""
Data Protection Engine for DataGuard.

The library contract consumed by a thin service layer. Ties together:
- RuleEngine: DLP screening before anything is stored
- CryptoVault: envelope encryption of accepted payloads
- AccessController: owner-or-grant authorization
- RetentionScheduler: retention expiry and status reporting
- AuditTrail: per-record append-only events

Every record state change and the audit event documenting it are written
in one atomic RecordStore.mutate() call. Denied operations and decryption
failures are appended as their own events and logged as security events.
The engine never retries a DLP or authorization decision.

Usage:
    engine = DataProtectionEngine(vault, InMemoryRecordStore(), InMemoryRuleStore())
    result = engine.submit("u1", "confidential", "quarterly numbers")
    engine.retrieve(result.record_id, "u1")
"""

from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

import structlog

from dataguard.config.settings import EngineSettings
from dataguard.infra.access import AccessController
from dataguard.lib.encryption import (
    Classification,
    CryptoVault,
    VaultConfig,
    load_master_key,
)
from dataguard.lib.exceptions import (
    AuthorizationError,
    DecryptionError,
    DLPBlockedError,
    DuplicateContentError,
    NotFoundError,
    ValidationError,
)
from dataguard.lib.logging import hash_uid
from dataguard.models.dlp_rule import FinalAction
from dataguard.models.records import (
    AccessGrant,
    AuditAction,
    AuditEvent,
    AuditOutcome,
    DataType,
    GrantPermission,
    ProtectedRecord,
)
from dataguard.models.schemas import ShareRequest, SubmitRequest, parse_model
from dataguard.services.audit_trail import AuditTrail
from dataguard.services.dlp_engine import RuleEngine, RulePreview
from dataguard.services.retention import RetentionScheduler, RetentionStatus
from dataguard.services.store_ports import RecordStore, RuleStore

logger = structlog.get_logger()

SYSTEM_ACTOR = "system"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of an accepted submission."""

    record_id: str
    retention_expiry: datetime
    final_action: FinalAction
    matched_rule_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class RotationReport:
    """Outcome of a master key rotation."""

    new_key_id: str
    previous_key_id: str
    rewrapped: int
    unchanged: int
    failed_record_ids: tuple[str, ...] = ()
    retired_key_ids: tuple[str, ...] = ()


class DataProtectionEngine:
    """
    Submit, retrieve, share, revoke and soft-delete protected records.

    Args:
        vault: Configured CryptoVault
        record_store: Storage for protected records
        rule_store: Storage for DLP rules
        settings: Retention and store settings (defaults when omitted)
        clock: Returns the current UTC time; shared by every component
    """

    def __init__(
        self,
        vault: CryptoVault,
        record_store: RecordStore,
        rule_store: RuleStore,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or EngineSettings()
        self._clock = clock or _utcnow
        self.vault = vault
        self.records = record_store
        self.rules = RuleEngine(rule_store, self._clock)
        self.access = AccessController(self._clock)
        self.retention = RetentionScheduler(
            default_days=self.settings.default_retention_days,
            max_days=self.settings.max_retention_days,
            expiring_soon_days=self.settings.expiring_soon_days,
        )
        self.audit = AuditTrail(record_store, self._clock)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DataProtectionEngine:
        """
        Build an engine backed by the SQL store from environment variables.

        Raises:
            ConfigurationError: Invalid settings or no master key available
        """
        from dataguard.services.sql_store import create_sql_stores

        settings = EngineSettings.from_env(environ)
        vault = CryptoVault(VaultConfig.from_master_key(load_master_key(environ)))
        stores = create_sql_stores(
            settings.database_url,
            timeout_seconds=settings.store_timeout_seconds,
            max_retries=settings.max_write_retries,
        )
        return cls(vault, stores.records, stores.rules, settings)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_active(self, record_id: str) -> ProtectedRecord:
        record = self.records.get(record_id)
        if record is None or record.is_deleted:
            raise NotFoundError("record", record_id)
        return record

    @staticmethod
    def _active_or_missing(current: ProtectedRecord) -> None:
        if current.is_deleted:
            raise NotFoundError("record", current.id)

    def _record_denial(
        self,
        record_id: str,
        actor_id: str,
        action: str,
        context: Mapping[str, Any] | None,
    ) -> None:
        event = self.audit.event(
            record_id,
            actor_id,
            AuditAction.ACCESS_DENIED,
            AuditOutcome.DENIED,
            context,
            permission=action,
        )
        try:
            self.audit.append_to(record_id, event)
        except NotFoundError:
            # Record vanished between the check and the audit write
            logger.warning("security_event", event_type="access_denied", record_id=record_id,
                           actor_hash=hash_uid(actor_id), permission=action)

    def _require(
        self,
        record: ProtectedRecord,
        actor_id: str,
        permission: GrantPermission,
        context: Mapping[str, Any] | None,
    ) -> None:
        try:
            self.access.require(record, actor_id, permission)
        except AuthorizationError:
            self._record_denial(record.id, actor_id, permission.value, context)
            raise

    def _open(self, record: ProtectedRecord) -> str:
        try:
            return self.vault.open(record.ciphertext, record.wrapped_key, record.algorithm_id)
        except DecryptionError:
            # Rotation may have re-wrapped the key and retired the old master key since the read
            current = self.records.get(record.id)
            if current is None or current.wrapped_key == record.wrapped_key:
                raise
            logger.debug("record_reread_after_rotation", record_id=record.id)
            return self.vault.open(current.ciphertext, current.wrapped_key, current.algorithm_id)

    def _listing(self, record: ProtectedRecord, now: datetime) -> dict[str, Any]:
        listing = record.to_listing()
        listing["retention_status"] = self.retention.record_status(record, now).value
        listing["days_until_expiry"] = self.retention.days_until(record.retention_expiry, now)
        return listing

    # =========================================================================
    # Submit
    # =========================================================================

    def submit(
        self,
        owner_id: str,
        classification: Classification | str,
        plaintext: str,
        data_type: str = "document",
        context: Mapping[str, Any] | None = None,
        retention_period_days: int | None = None,
    ) -> SubmitResult:
        """
        Screen, encrypt and store a payload.

        Returns:
            SubmitResult with the new record id and its retention expiry

        Raises:
            ValidationError: Malformed input
            DuplicateContentError: The owner already has an active record
                with identical content
            DLPBlockedError: A block rule fired; nothing was stored
            EncryptionError: Sealing failed
        """
        request: SubmitRequest = parse_model(
            SubmitRequest,
            owner_id=owner_id,
            classification=classification,
            plaintext=plaintext,
            data_type=data_type,
            retention_period_days=retention_period_days,
            context=dict(context or {}),
        )
        period = self.retention.resolve_period(request.retention_period_days)

        # Duplicate check first so a resubmission never counts against rule statistics
        integrity_hash = CryptoVault.compute_integrity_hash(request.plaintext)
        existing = self.records.find_active_by_hash(request.owner_id, integrity_hash)
        if existing is not None:
            logger.info(
                "record_duplicate_rejected",
                owner_hash=hash_uid(request.owner_id),
                existing_record_id=existing.id,
            )
            raise DuplicateContentError(existing.id)

        evaluation_context = {
            **request.context,
            "userId": request.owner_id,
            "dataType": request.data_type.value,
            "classification": request.classification.value,
            "content": request.plaintext,
        }
        evaluation = self.rules.evaluate(
            request.plaintext, evaluation_context, request.classification
        )
        if evaluation.blocked:
            blocking = evaluation.blocking_rule
            logger.warning(
                "security_event",
                event_type="dlp_blocked",
                owner_hash=hash_uid(request.owner_id),
                classification=request.classification.value,
                rule_id=blocking.rule_id,
                matched_rule_ids=list(evaluation.matched_rule_ids),
            )
            raise DLPBlockedError(
                blocking.rule_id,
                blocking.action.value,
                evaluation.matched_rule_ids,
            )

        sealed = self.vault.seal(request.plaintext, request.classification)
        now = self._clock()
        record_id = str(uuid.uuid4())
        created = self.audit.event(
            record_id,
            request.owner_id,
            AuditAction.CREATED,
            context=request.context,
            classification=request.classification.value,
            dlp_action=evaluation.final_action.value,
            matched_rules=len(evaluation.matched_rules),
        )
        record = ProtectedRecord(
            id=record_id,
            owner_id=request.owner_id,
            data_type=request.data_type,
            classification=request.classification,
            ciphertext=sealed.ciphertext,
            wrapped_key=sealed.wrapped_key,
            algorithm_id=sealed.algorithm_id,
            integrity_hash=sealed.integrity_hash,
            retention_period_days=period,
            retention_expiry=self.retention.compute_expiry(now, period),
            created_at=now,
            updated_at=now,
            events=(created,),
        )
        self.records.insert(record)

        logger.info(
            "record_submitted",
            record_id=record_id,
            owner_hash=hash_uid(request.owner_id),
            classification=request.classification.value,
            data_type=request.data_type.value,
            dlp_action=evaluation.final_action.value,
        )
        return SubmitResult(
            record_id=record_id,
            retention_expiry=record.retention_expiry,
            final_action=evaluation.final_action,
            matched_rule_ids=evaluation.matched_rule_ids,
        )

    # =========================================================================
    # Retrieve
    # =========================================================================

    def retrieve(
        self,
        record_id: str,
        actor_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> str:
        """
        Decrypt a record for an authorized actor and log the access.

        Raises:
            NotFoundError: Unknown or soft-deleted record
            AuthorizationError: Actor holds no matching unexpired grant
            DecryptionError: Ciphertext or wrapped key failed authentication
        """
        record = self._get_active(record_id)
        self._require(record, actor_id, GrantPermission.READ, context)

        try:
            plaintext = self._open(record)
        except DecryptionError as e:
            self.audit.append_to(
                record_id,
                self.audit.event(
                    record_id,
                    actor_id,
                    AuditAction.DECRYPTION_FAILED,
                    AuditOutcome.FAILED,
                    context,
                    reason=str(e),
                ),
            )
            logger.error("security_event", event_type="decryption_failed", record_id=record_id)
            raise

        def log_access(current: ProtectedRecord) -> ProtectedRecord:
            self._active_or_missing(current)
            self.access.require(current, actor_id, GrantPermission.READ)
            return self.audit.append(
                current,
                self.audit.event(record_id, actor_id, AuditAction.ACCESSED, context=context),
            )

        try:
            self.records.mutate(record_id, log_access)
        except AuthorizationError:
            # Grant revoked or expired while decrypting
            self._record_denial(record_id, actor_id, GrantPermission.READ.value, context)
            raise

        logger.info("record_accessed", record_id=record_id, actor_hash=hash_uid(actor_id))
        return plaintext

    # =========================================================================
    # Share / Revoke
    # =========================================================================

    def share(
        self,
        record_id: str,
        owner_id: str,
        grantee_id: str,
        permissions: Iterable[GrantPermission | str],
        expires_at: datetime | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> AccessGrant:
        """
        Grant a non-owner access to a record.

        Raises:
            ValidationError: Bad grantee or permissions
            NotFoundError: Unknown or soft-deleted record
            AuthorizationError: Caller is not the owner
        """
        request: ShareRequest = parse_model(
            ShareRequest,
            grantee_id=grantee_id,
            permissions=list(permissions),
            expires_at=expires_at,
        )
        created: list[AccessGrant] = []

        def apply(current: ProtectedRecord) -> ProtectedRecord:
            self._active_or_missing(current)
            updated, grant = self.access.grant(
                current,
                request.grantee_id,
                request.permissions,
                granted_by=owner_id,
                expires_at=request.expires_at,
            )
            created.append(grant)
            return self.audit.append(
                updated,
                self.audit.event(
                    record_id,
                    owner_id,
                    AuditAction.SHARED,
                    context=context,
                    grantee=request.grantee_id,
                    permissions=",".join(sorted(p.value for p in request.permissions)),
                ),
            )

        try:
            self.records.mutate(record_id, apply)
        except AuthorizationError:
            self._record_denial(record_id, owner_id, GrantPermission.SHARE.value, context)
            raise

        logger.info(
            "record_shared",
            record_id=record_id,
            grantee_hash=hash_uid(request.grantee_id),
            permissions=sorted(p.value for p in request.permissions),
        )
        return created[-1]

    def revoke(
        self,
        record_id: str,
        owner_id: str,
        grantee_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Remove every grant held by `grantee_id`. No-op when there are none.

        Returns:
            Number of grants removed
        """
        removed_counts: list[int] = []

        def apply(current: ProtectedRecord) -> ProtectedRecord:
            self._active_or_missing(current)
            updated, removed = self.access.revoke(current, grantee_id, revoked_by=owner_id)
            removed_counts.append(removed)
            if removed == 0:
                return current
            return self.audit.append(
                updated,
                self.audit.event(
                    record_id,
                    owner_id,
                    AuditAction.SHARE_REVOKED,
                    context=context,
                    grantee=grantee_id,
                    grants_removed=removed,
                ),
            )

        try:
            self.records.mutate(record_id, apply)
        except AuthorizationError:
            self._record_denial(record_id, owner_id, "revoke", context)
            raise

        removed = removed_counts[-1]
        logger.info("record_share_revoked", record_id=record_id,
                    grantee_hash=hash_uid(grantee_id), grants_removed=removed)
        return removed

    # =========================================================================
    # Soft Delete
    # =========================================================================

    def soft_delete(
        self,
        record_id: str,
        actor_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> ProtectedRecord:
        """
        Flag a record as deleted. Requires the `delete` permission.

        Ciphertext is kept; the record disappears from listings and can no
        longer be retrieved, shared or deleted again.
        """
        def apply(current: ProtectedRecord) -> ProtectedRecord:
            self._active_or_missing(current)
            self.access.require(current, actor_id, GrantPermission.DELETE)
            now = self._clock()
            deleted = replace(
                current,
                is_deleted=True,
                deleted_at=now,
                deleted_by=actor_id,
                updated_at=now,
            )
            return self.audit.append(
                deleted,
                self.audit.event(record_id, actor_id, AuditAction.DELETED, context=context),
            )

        try:
            record = self.records.mutate(record_id, apply)
        except AuthorizationError:
            self._record_denial(record_id, actor_id, GrantPermission.DELETE.value, context)
            raise

        logger.info("record_deleted", record_id=record_id, actor_hash=hash_uid(actor_id))
        return record

    # =========================================================================
    # Rules
    # =========================================================================

    def evaluate_rule(
        self,
        rule_id: str,
        sample: str,
        context: Mapping[str, Any] | None = None,
    ) -> RulePreview:
        """Dry-run a stored rule against a sample. Administrative callers only."""
        return self.rules.test_rule(self.rules.get_rule(rule_id), sample, context)

    # =========================================================================
    # Reporting
    # =========================================================================

    def audit_trail(self, record_id: str) -> tuple[AuditEvent, ...]:
        return self.audit.query(record_id)

    def list_records(
        self,
        owner_id: str,
        classification: Classification | str | None = None,
        data_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Active records of an owner, newest first. Never includes key material."""
        try:
            classification_filter = Classification.parse(classification) if classification else None
        except ValueError as e:
            raise ValidationError("Unknown classification filter") from e
        try:
            data_type_filter = DataType(data_type) if data_type else None
        except ValueError as e:
            raise ValidationError("Unknown data type filter") from e

        now = self._clock()
        records = self.records.list_records(
            owner_id=owner_id,
            classification=classification_filter,
            data_type=data_type_filter,
        )
        return [self._listing(r, now) for r in records]

    def find_expiring(self, within_days: int | None = None) -> list[dict[str, Any]]:
        """Active records expiring within `within_days` (expired ones included)."""
        now = self._clock()
        days = self.settings.expiring_soon_days if within_days is None else within_days
        cutoff = self.retention.expiring_cutoff(now, days)
        return [self._listing(r, now) for r in self.records.find_expiring(cutoff)]

    def retention_status(self, record_id: str) -> RetentionStatus:
        return self.retention.record_status(self._get_active(record_id), self._clock())

    def overview(self) -> dict[str, Any]:
        """Aggregate counts for dashboards."""
        now = self._clock()
        active = self.records.list_records()
        retention = self.retention.report(active, now)
        rules = self.rules.list_rules()
        return {
            "total_records": len(active),
            "by_classification": dict(Counter(r.classification.value for r in active)),
            "by_data_type": dict(Counter(r.data_type.value for r in active)),
            "retention": {
                RetentionStatus.ACTIVE.value: retention.active,
                RetentionStatus.EXPIRING_SOON.value: retention.expiring_soon,
                RetentionStatus.EXPIRED.value: retention.expired,
            },
            "total_rules": len(rules),
            "enabled_rules": sum(1 for r in rules if r.enabled),
            "most_triggered_rules": [
                {
                    "id": r.id,
                    "name": r.name,
                    "total_matches": r.statistics.total_matches,
                    "effectiveness": r.statistics.effectiveness,
                }
                for r in self.rules.most_triggered(limit=5)
            ],
        }

    # =========================================================================
    # Key Rotation
    # =========================================================================

    def _referenced_key_ids(self) -> set[str]:
        referenced = set()
        for record_id in self.records.record_ids():
            record = self.records.get(record_id)
            if record is not None:
                referenced.add(record.master_key_id)
        return referenced

    def rotate_master_key(
        self,
        new_master_key: bytes | None = None,
        retire_old_keys: bool = False,
    ) -> RotationReport:
        """
        Install a new master key and re-wrap every record key under it.

        Ciphertext is never touched. Records whose key cannot be unwrapped
        are reported and left as they are; old keys are only retired when
        every record was re-wrapped and a fresh scan finds no record still
        referencing them.
        """
        previous_key_id = self.vault.active_key_id
        new_key_id = self.vault.rotate_master_key(new_master_key)

        rewrapped = 0
        unchanged = 0
        failed: list[str] = []

        def rewrap(current: ProtectedRecord) -> ProtectedRecord:
            if current.master_key_id == new_key_id:
                return current
            now = self._clock()
            updated = replace(
                current,
                wrapped_key=self.vault.rewrap_key(current.wrapped_key),
                updated_at=now,
            )
            return self.audit.append(
                updated,
                self.audit.event(
                    current.id,
                    SYSTEM_ACTOR,
                    AuditAction.KEY_REWRAPPED,
                    previous_key_id=current.master_key_id,
                    master_key_id=new_key_id,
                ),
            )

        for record_id in self.records.record_ids():
            record = self.records.get(record_id)
            if record is None or record.master_key_id == new_key_id:
                unchanged += 1
                continue
            try:
                self.records.mutate(record_id, rewrap)
            except DecryptionError as e:
                failed.append(record_id)
                logger.error("key_rewrap_failed", record_id=record_id, error=str(e))
                continue
            rewrapped += 1

        retired: list[str] = []
        if retire_old_keys and not failed:
            # Fresh scan: records inserted after the snapshot may still use an old key
            referenced = self._referenced_key_ids()
            for key_id in sorted(self.vault.config.master_keys):
                if key_id == new_key_id:
                    continue
                if key_id in referenced:
                    logger.warning("master_key_retained", master_key_id=key_id)
                    continue
                self.vault.retire_master_key(key_id)
                retired.append(key_id)

        logger.info(
            "master_key_rotated",
            new_key_id=new_key_id,
            previous_key_id=previous_key_id,
            rewrapped=rewrapped,
            failed=len(failed),
            retired=retired,
        )
        return RotationReport(
            new_key_id=new_key_id,
            previous_key_id=previous_key_id,
            rewrapped=rewrapped,
            unchanged=unchanged,
            failed_record_ids=tuple(failed),
            retired_key_ids=tuple(retired),
        )
