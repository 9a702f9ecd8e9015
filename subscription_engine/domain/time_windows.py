"""
Time window arithmetic for subscriptions.

All instants are timezone-aware UTC. A pricing duration of zero days means a
lifetime subscription: no ``ends_at`` and therefore no grace period.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from subscription_engine.domain.reset_period import FeatureResetPeriod

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SubscriptionWindow:
    """Derived temporal fields of a new or renewed subscription."""

    starts_at: datetime
    ends_at: Optional[datetime]
    grace_ends_at: Optional[datetime]
    trial_ends_at: Optional[datetime] = None

    @property
    def is_lifetime(self) -> bool:
        return self.ends_at is None


def grace_end_for(ends_at: Optional[datetime], grace_days: int) -> Optional[datetime]:
    if ends_at is None:
        return None
    return ends_at + timedelta(days=grace_days)


def compute_window(
    now: datetime,
    duration_days: int,
    grace_days: int,
    trial_days: Optional[int] = None,
) -> SubscriptionWindow:
    """Build the window for a subscription starting at ``now``.

    When a trial precedes the paid term the paid period starts at the end of
    the trial, so the two never overlap.
    """

    trial_ends_at = None
    paid_start = now
    if trial_days:
        trial_ends_at = now + timedelta(days=trial_days)
        paid_start = trial_ends_at

    ends_at = paid_start + timedelta(days=duration_days) if duration_days > 0 else None
    return SubscriptionWindow(
        starts_at=now,
        ends_at=ends_at,
        grace_ends_at=grace_end_for(ends_at, grace_days),
        trial_ends_at=trial_ends_at,
    )


def extend_end(
    current_ends_at: Optional[datetime], duration_days: int, now: datetime
) -> Optional[datetime]:
    """New ``ends_at`` after renewing for ``duration_days``.

    Extends from the current end while it is still in the future, otherwise
    from ``now``. Lifetime pricing yields no end date.
    """

    if duration_days <= 0:
        return None
    base = current_ends_at if current_ends_at is not None and current_ends_at > now else now
    return base + timedelta(days=duration_days)


def feature_valid_until(
    reset_period: FeatureResetPeriod, effective_start: datetime
) -> Optional[datetime]:
    return reset_period.valid_until(effective_start)


def is_in_grace_period(
    ends_at: Optional[datetime], grace_ends_at: Optional[datetime], now: datetime
) -> bool:
    return (
        grace_ends_at is not None
        and grace_ends_at > now
        and (ends_at is None or ends_at <= now)
    )


def has_valid_period(
    ends_at: Optional[datetime], grace_ends_at: Optional[datetime], now: datetime
) -> bool:
    """True for lifetime subscriptions, before ``ends_at`` or inside grace."""

    if ends_at is None:
        return True
    if is_in_grace_period(ends_at, grace_ends_at, now):
        return True
    return ends_at > now


def days_between(start: datetime, end: datetime) -> int:
    return max(0, (end - start).days)


def days_remaining(
    ends_at: Optional[datetime], grace_ends_at: Optional[datetime], now: datetime
) -> Optional[int]:
    if ends_at is None:
        return None
    end = grace_ends_at if is_in_grace_period(ends_at, grace_ends_at, now) else ends_at
    return days_between(now, end)


def is_ending_soon(ends_at: Optional[datetime], now: datetime, days: int = 7) -> bool:
    if ends_at is None:
        return False
    return now <= ends_at <= now + timedelta(days=days)
