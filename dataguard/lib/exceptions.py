"""
Custom exception hierarchy for DataGuard.

All exceptions inherit from DataGuardException, enabling a catch-all for
engine errors while keeping the ability to catch specific error types.

Retry semantics:
- StoreUnavailable is the only retryable class, and only on idempotent
  read paths owned by the caller.
- DLP and authorization decisions are never retried by the engine.
"""

from __future__ import annotations


class DataGuardException(Exception):
    """Base exception for all DataGuard errors."""

    retryable: bool = False


class ConfigurationError(DataGuardException):
    """Missing environment variables, invalid config values, or bad key material."""


class ValidationError(DataGuardException):
    """Malformed caller input. Recoverable by the caller, never audited."""


class AuthorizationError(DataGuardException):
    """Actor is neither the owner nor holds a matching, unexpired grant."""

    def __init__(
        self,
        message: str,
        *,
        actor_id: str | None = None,
        record_id: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.actor_id = actor_id
        self.record_id = record_id
        self.action = action


class DLPBlockedError(DataGuardException):
    """A `block` rule fired during submission; no record was created."""

    def __init__(
        self,
        rule_id: str,
        action: str = "block",
        matched_rule_ids: tuple[str, ...] = (),
    ) -> None:
        super().__init__(f"Submission blocked by DLP rule {rule_id}")
        self.rule_id = rule_id
        self.action = action
        self.matched_rule_ids = matched_rule_ids


class EncryptionError(DataGuardException):
    """Sealing failed (empty plaintext, unsupported classification, key errors)."""


class DecryptionError(EncryptionError):
    """Authentication or decryption failed. Fatal for that read."""


class DuplicateContentError(DataGuardException):
    """The owner already has an active record with identical content."""

    def __init__(self, existing_record_id: str) -> None:
        super().__init__("Data with identical content already exists")
        self.existing_record_id = existing_record_id


class NotFoundError(DataGuardException):
    """Record or rule does not exist (or the record is soft-deleted)."""

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} {resource_id!r} not found")
        self.resource = resource
        self.resource_id = resource_id


class StoreUnavailable(DataGuardException):
    """The backing store timed out or could not complete a write."""

    retryable = True


class StateError(DataGuardException):
    """A write attempted to change an immutable field."""
