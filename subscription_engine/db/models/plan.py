"""Plan catalog models: plans, pricing options and features."""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.db.base import Base, TimestampMixin, UTCDateTime
from subscription_engine.domain.reset_period import FeatureResetPeriod


class Plan(TimestampMixin, Base):
    """Represents an available subscription plan tier."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_available(self) -> bool:
        return self.is_active and not self.is_deleted

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Plan {self.id} active={self.is_active}>"


class PlanPricing(TimestampMixin, Base):
    """A purchasable duration of a plan. ``duration_in_days == 0`` is lifetime."""

    __tablename__ = "plan_pricings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[str] = mapped_column(
        String, ForeignKey("plans.id", ondelete="CASCADE"), index=True, nullable=False
    )
    label: Mapped[str] = mapped_column(String, nullable=False, default="")
    duration_in_days: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def is_lifetime(self) -> bool:
        return self.duration_in_days <= 0

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PlanPricing {self.id} plan={self.plan_id} days={self.duration_in_days}>"


class PlanFeature(TimestampMixin, Base):
    """A metered or boolean capability granted by a plan."""

    __tablename__ = "plan_features"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[str] = mapped_column(
        String, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    value: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reset_period: Mapped[FeatureResetPeriod] = mapped_column(
        Enum(
            FeatureResetPeriod,
            native_enum=False,
            length=20,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
        default=FeatureResetPeriod.NEVER,
    )

    __table_args__ = (
        UniqueConstraint("plan_id", "key", name="uq_plan_feature_key"),
    )

    @property
    def limit(self) -> Any:
        """Parsed ``value``: ``None`` means unlimited."""

        return parse_feature_value(self.value)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PlanFeature {self.plan_id}.{self.key}={self.value}>"


def parse_feature_value(raw: Optional[str]) -> Any:
    """Turn the stored feature value into ``None``/bool/int/float/JSON/str."""

    if raw is None:
        return None
    value = raw.strip()
    lowered = value.lower()
    if lowered in {"", "unlimited", "null"}:
        return None
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if value.startswith(("[", "{")):
        try:
            return json.loads(value)
        except ValueError:
            return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value
