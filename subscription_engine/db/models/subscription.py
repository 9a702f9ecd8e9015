"""Subscription model: one enrollment episode of a subscriber in a plan."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.db.base import Base, TimestampMixin, UTCDateTime
from subscription_engine.domain import time_windows
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef


class Subscription(TimestampMixin, Base):
    """Status and dates are only changed by lifecycle actions."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscriber_type: Mapped[str] = mapped_column(String, nullable=False)
    subscriber_id: Mapped[str] = mapped_column(String, nullable=False)
    plan_id: Mapped[str] = mapped_column(
        String, ForeignKey("plans.id"), index=True, nullable=False
    )
    plan_pricing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("plan_pricings.id"), nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(
            SubscriptionStatus,
            native_enum=False,
            length=20,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
        default=SubscriptionStatus.PENDING,
    )
    is_auto_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    starts_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    grace_ends_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_subscriber", "subscriber_type", "subscriber_id"),
        Index("ix_subscriptions_status_ends_at", "status", "ends_at"),
        Index("ix_subscriptions_status_grace_ends_at", "status", "grace_ends_at"),
        Index("ix_subscriptions_auto_renewal_ends_at", "is_auto_renewal", "ends_at"),
    )

    @property
    def subscriber(self) -> SubscriberRef:
        return SubscriberRef(type=self.subscriber_type, id=self.subscriber_id)

    @property
    def is_lifetime(self) -> bool:
        return self.ends_at is None

    def belongs_to(self, subscriber: SubscriberRef) -> bool:
        return (
            self.subscriber_type == subscriber.type
            and self.subscriber_id == subscriber.id
        )

    def is_in_grace_period(self, now: datetime) -> bool:
        return time_windows.is_in_grace_period(self.ends_at, self.grace_ends_at, now)

    def has_valid_period(self, now: datetime) -> bool:
        return time_windows.has_valid_period(self.ends_at, self.grace_ends_at, now)

    def is_usable(self, now: datetime) -> bool:
        """Active status and not past the paid or grace window."""

        return self.status.is_active and self.has_valid_period(now)

    def is_on_trial(self, now: datetime) -> bool:
        return (
            self.status is SubscriptionStatus.TRIAL
            and self.trial_ends_at is not None
            and self.trial_ends_at > now
        )

    def days_remaining(self, now: datetime) -> Optional[int]:
        return time_windows.days_remaining(self.ends_at, self.grace_ends_at, now)

    def trial_days_remaining(self, now: datetime) -> Optional[int]:
        if not self.is_on_trial(now):
            return None
        return time_windows.days_between(now, self.trial_ends_at)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"<Subscription {self.id} subscriber={self.subscriber_type}#{self.subscriber_id} "
            f"plan={self.plan_id} status={self.status.value}>"
        )
