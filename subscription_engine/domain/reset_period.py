"""Feature usage reset periods."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta


class FeatureResetPeriod(str, enum.Enum):
    """How often a feature's usage counter is zeroed automatically."""

    NEVER = "never"
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def automatic_reset_periods(cls) -> Tuple["FeatureResetPeriod", ...]:
        return (cls.DAILY, cls.MONTHLY, cls.YEARLY)

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def is_automatic(self) -> bool:
        return self is not FeatureResetPeriod.NEVER

    def period_start(self, now: datetime) -> Optional[datetime]:
        """Start of the period that contains ``now``."""

        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is FeatureResetPeriod.DAILY:
            return midnight
        if self is FeatureResetPeriod.MONTHLY:
            return midnight.replace(day=1)
        if self is FeatureResetPeriod.YEARLY:
            return midnight.replace(month=1, day=1)
        return None

    def next_reset_date(self, start: datetime) -> Optional[datetime]:
        """First period boundary strictly after ``start``."""

        current = self.period_start(start)
        if current is None:
            return None
        return current + self.interval()

    def valid_until(self, start: datetime) -> Optional[datetime]:
        """One full period counted from ``start`` (not aligned to boundaries)."""

        if self is FeatureResetPeriod.NEVER:
            return None
        return start + self.interval()

    def interval(self) -> relativedelta:
        if self is FeatureResetPeriod.DAILY:
            return relativedelta(days=1)
        if self is FeatureResetPeriod.MONTHLY:
            return relativedelta(months=1)
        if self is FeatureResetPeriod.YEARLY:
            return relativedelta(years=1)
        raise ValueError("Reset period 'never' has no interval")

    def should_reset(self, last_activity: Optional[datetime], now: datetime) -> bool:
        """True when ``last_activity`` belongs to an earlier period than ``now``."""

        boundary = self.period_start(now)
        if boundary is None or last_activity is None:
            return False
        return last_activity < boundary
