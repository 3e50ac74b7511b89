"""
Record-level access control for DataGuard.

Decides whether an actor may read, write, delete or share a protected
record:

- The owner is always authorized and is never enumerated as a grant.
- Any other actor needs at least one unexpired grant naming them whose
  permission set contains the action. Grants for the same grantee coexist
  and are evaluated independently.
- Everything else is denied: unknown actions, empty actor ids, expired or
  malformed grants.

Grant and revoke are owner-only and return a new record; callers apply
them inside the record store's atomic read-modify-write so concurrent
grants are never lost.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime

from dataguard.lib.exceptions import AuthorizationError, ValidationError
from dataguard.lib.logging import hash_uid
from dataguard.models.records import (
    ALL_PERMISSIONS,
    AccessGrant,
    GrantPermission,
    ProtectedRecord,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_permission(action: GrantPermission | str) -> GrantPermission | None:
    """Map an action name to a permission, or None when it is not one."""
    if isinstance(action, GrantPermission):
        return action
    try:
        return GrantPermission(str(action).strip().lower())
    except ValueError:
        return None


def parse_permissions(permissions: Iterable[GrantPermission | str]) -> frozenset[GrantPermission]:
    """
    Validate a permission set for a new grant.

    Raises:
        ValidationError: Empty set or an unknown permission name
    """
    parsed = set()
    for item in permissions:
        permission = parse_permission(item)
        if permission is None:
            raise ValidationError(f"Unknown permission: {item!r}")
        parsed.add(permission)
    if not parsed:
        raise ValidationError("At least one permission is required")
    return frozenset(parsed)


def _grant_allows(grant: AccessGrant, actor_id: str, permission: GrantPermission, now: datetime) -> bool:
    try:
        return (
            grant.grantee_id == actor_id
            and not grant.is_expired(now)
            and permission in grant.permissions
        )
    except TypeError:
        # naive/aware datetime mix in a stored grant
        logger.warning("Ignoring grant with unusable expiry for grantee_hash=%s", hash_uid(grant.grantee_id))
        return False


class AccessController:
    """
    Owner-or-grant authorization over protected records.

    Args:
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or _utcnow

    def authorize(
        self,
        record: ProtectedRecord,
        actor_id: str,
        action: GrantPermission | str,
        now: datetime | None = None,
    ) -> bool:
        """
        Check whether `actor_id` may perform `action` on the record.

        Returns:
            True for the owner or a matching unexpired grant, False otherwise
        """
        if not actor_id:
            return False
        permission = parse_permission(action)
        if permission is None:
            return False
        if actor_id == record.owner_id:
            return True

        at = now or self._clock()
        return any(_grant_allows(g, actor_id, permission, at) for g in record.grants)

    def require(
        self,
        record: ProtectedRecord,
        actor_id: str,
        action: GrantPermission | str,
        now: datetime | None = None,
    ) -> None:
        """
        Raise AuthorizationError unless authorize() allows the action.
        """
        if not self.authorize(record, actor_id, action, now):
            logger.warning(
                "Access denied: actor_hash=%s action=%s record=%s",
                hash_uid(actor_id),
                action,
                record.id,
            )
            raise AuthorizationError(
                f"Not authorized to {action} this record",
                actor_id=actor_id,
                record_id=record.id,
                action=str(action),
            )

    def effective_permissions(
        self,
        record: ProtectedRecord,
        actor_id: str,
        now: datetime | None = None,
    ) -> frozenset[GrantPermission]:
        """Union of the permissions an actor currently holds on the record."""
        if not actor_id:
            return frozenset()
        if actor_id == record.owner_id:
            return ALL_PERMISSIONS
        at = now or self._clock()
        held: set[GrantPermission] = set()
        for grant in record.grants:
            if any(_grant_allows(grant, actor_id, p, at) for p in grant.permissions):
                held.update(grant.permissions)
        return frozenset(held)

    def _require_owner(self, record: ProtectedRecord, actor_id: str, action: str) -> None:
        if actor_id != record.owner_id:
            raise AuthorizationError(
                f"Only the data owner can {action}",
                actor_id=actor_id,
                record_id=record.id,
                action=action,
            )

    def grant(
        self,
        record: ProtectedRecord,
        grantee_id: str,
        permissions: Iterable[GrantPermission | str],
        granted_by: str,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> tuple[ProtectedRecord, AccessGrant]:
        """
        Append a new grant. Existing grants for the grantee are left untouched.

        Raises:
            AuthorizationError: `granted_by` is not the owner
            ValidationError: Empty grantee, grantee is the owner, or bad permissions
        """
        self._require_owner(record, granted_by, "share")
        if not grantee_id:
            raise ValidationError("grantee_id is required")
        if grantee_id == record.owner_id:
            raise ValidationError("The owner already holds every permission")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)

        new_grant = AccessGrant(
            grantee_id=grantee_id,
            permissions=parse_permissions(permissions),
            granted_by=granted_by,
            granted_at=now or self._clock(),
            expires_at=expires_at,
        )
        return replace(record, grants=(*record.grants, new_grant)), new_grant

    def revoke(
        self,
        record: ProtectedRecord,
        grantee_id: str,
        revoked_by: str,
    ) -> tuple[ProtectedRecord, int]:
        """
        Remove every grant for `grantee_id`.

        Returns:
            (record, removed_count); the same record object when nothing was removed

        Raises:
            AuthorizationError: `revoked_by` is not the owner
        """
        self._require_owner(record, revoked_by, "revoke sharing")
        kept = tuple(g for g in record.grants if g.grantee_id != grantee_id)
        removed = len(record.grants) - len(kept)
        if removed == 0:
            return record, 0
        return replace(record, grants=kept), removed
