"""Per-subscription feature usage counters."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.db.base import Base, TimestampMixin, UTCDateTime


class SubscriptionUsage(TimestampMixin, Base):
    """One counter per (subscription, feature key)."""

    __tablename__ = "subscription_usages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(String, nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "key", name="uq_subscription_usage_key"),
        Index("ix_subscription_usages_key_used", "key", "used"),
        Index("ix_subscription_usages_last_used_at", "last_used_at"),
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SubscriptionUsage {self.subscription_id}.{self.key} used={self.used}>"
