"""
Retention scheduling for DataGuard.

Retention expiry is computed once, when a record is created, and never
changes afterwards. Status is derived from whole days remaining:

    days_until = floor((expiry - now) / 1 day)
    days_until < 0                  -> expired
    days_until <= expiring_soon     -> expiring_soon
    otherwise                       -> active

Reporting only: reaching expiry never purges a record.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from dataguard.config.settings import DEFAULT_RETENTION_DAYS, EXPIRING_SOON_DAYS
from dataguard.lib.exceptions import ValidationError
from dataguard.models.records import ProtectedRecord

MIN_RETENTION_DAYS = 1


class RetentionStatus(StrEnum):
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


@dataclass(frozen=True)
class RetentionReport:
    """Counts of active records by retention status."""

    active: int = 0
    expiring_soon: int = 0
    expired: int = 0

    @property
    def total(self) -> int:
        return self.active + self.expiring_soon + self.expired


class RetentionScheduler:
    """
    Computes and reports retention expiry.

    Args:
        default_days: Period used when a submission does not specify one
        max_days: Upper bound for any requested period
        expiring_soon_days: Window for the expiring_soon status
    """

    def __init__(
        self,
        default_days: int = DEFAULT_RETENTION_DAYS,
        max_days: int = DEFAULT_RETENTION_DAYS,
        expiring_soon_days: int = EXPIRING_SOON_DAYS,
    ):
        if not MIN_RETENTION_DAYS <= default_days <= max_days:
            raise ValidationError(
                f"default retention {default_days} outside {MIN_RETENTION_DAYS}..{max_days}"
            )
        self.default_days = default_days
        self.max_days = max_days
        self.expiring_soon_days = expiring_soon_days

    def resolve_period(self, days: int | None) -> int:
        """
        Resolve the retention period for a new record.

        Raises:
            ValidationError: Not an integer, or outside 1..max_days
        """
        if days is None:
            return self.default_days
        if isinstance(days, bool) or not isinstance(days, int):
            raise ValidationError("retention_period_days must be an integer")
        if not MIN_RETENTION_DAYS <= days <= self.max_days:
            raise ValidationError(
                f"retention_period_days must be between {MIN_RETENTION_DAYS} and {self.max_days}"
            )
        return days

    @staticmethod
    def compute_expiry(created_at: datetime, retention_period_days: int) -> datetime:
        return created_at + timedelta(days=retention_period_days)

    @staticmethod
    def days_until(expiry: datetime, now: datetime) -> int:
        return math.floor((expiry - now) / timedelta(days=1))

    def status(self, expiry: datetime, now: datetime) -> RetentionStatus:
        days = self.days_until(expiry, now)
        if days < 0:
            return RetentionStatus.EXPIRED
        if days <= self.expiring_soon_days:
            return RetentionStatus.EXPIRING_SOON
        return RetentionStatus.ACTIVE

    def record_status(self, record: ProtectedRecord, now: datetime) -> RetentionStatus:
        return self.status(record.retention_expiry, now)

    @staticmethod
    def expiring_cutoff(now: datetime, within_days: int = EXPIRING_SOON_DAYS) -> datetime:
        """
        Latest expiry included in a 'find expiring' listing.

        Covers every expiry whose whole days remaining is at most
        `within_days`, the same rounding status() uses.
        """
        if within_days < 0:
            raise ValidationError("within_days must not be negative")
        return now + timedelta(days=within_days + 1) - timedelta(microseconds=1)

    def report(self, records: Iterable[ProtectedRecord], now: datetime) -> RetentionReport:
        counts = {status: 0 for status in RetentionStatus}
        for record in records:
            if record.is_deleted:
                continue
            counts[self.record_status(record, now)] += 1
        return RetentionReport(
            active=counts[RetentionStatus.ACTIVE],
            expiring_soon=counts[RetentionStatus.EXPIRING_SOON],
            expired=counts[RetentionStatus.EXPIRED],
        )
