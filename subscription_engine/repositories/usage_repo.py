"""Repository helpers for feature usage counters."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import Uuid, bindparam, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.db.base import UTCDateTime
from subscription_engine.db.models.plan import PlanFeature
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.subscription_usage import SubscriptionUsage
from subscription_engine.domain.reset_period import FeatureResetPeriod
from subscription_engine.domain.status import SubscriptionStatus

_INSERT_IF_MISSING = text(
    """
    INSERT INTO subscription_usages
        (subscription_id, key, used, last_used_at, valid_until, created_at, updated_at)
    VALUES (:subscription_id, :key, 0, NULL, :valid_until, :now, :now)
    ON CONFLICT (subscription_id, key) DO NOTHING
    """
).bindparams(
    bindparam("subscription_id", type_=Uuid()),
    bindparam("valid_until", type_=UTCDateTime()),
    bindparam("now", type_=UTCDateTime()),
)


class UsageRepo:
    """Counter access with atomic conditional updates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(
        self, subscription_id: UUID, key: str, *, for_update: bool = False
    ) -> Optional[SubscriptionUsage]:
        query = (
            select(SubscriptionUsage)
            .where(
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.key == key,
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_id_for_update(
        self, usage_id: int, *, skip_locked: bool = False
    ) -> Optional[SubscriptionUsage]:
        result = await self.session.execute(
            select(SubscriptionUsage)
            .where(SubscriptionUsage.id == usage_id)
            .with_for_update(skip_locked=skip_locked)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        subscription_id: UUID,
        key: str,
        now: datetime,
        valid_until: Optional[datetime] = None,
    ) -> SubscriptionUsage:
        """Return the counter, inserting a zeroed one if it does not exist yet.

        ``ON CONFLICT DO NOTHING`` keeps concurrent first consumers from
        tripping over the unique constraint.
        """

        await self.session.execute(
            _INSERT_IF_MISSING,
            {
                "subscription_id": subscription_id,
                "key": key,
                "valid_until": valid_until,
                "now": now,
            },
        )
        result = await self.session.execute(
            select(SubscriptionUsage)
            .where(
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.key == key,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def try_increment(
        self,
        usage_id: int,
        amount: int,
        limit: Optional[int],
        now: datetime,
    ) -> bool:
        """Add ``amount`` only if the result stays within ``limit``.

        The limit check and the increment are one statement, so concurrent
        callers are serialized by the database rather than by application
        memory. The owning subscription must still be usable at ``now`` when
        the statement runs.
        """

        query = (
            update(SubscriptionUsage)
            .where(
                SubscriptionUsage.id == usage_id,
                self._subscription_usable(now),
            )
            .values(
                used=SubscriptionUsage.used + amount,
                last_used_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if limit is not None:
            query = query.where(SubscriptionUsage.used + amount <= limit)
        result = await self.session.execute(query)
        return result.rowcount == 1

    async def reset_if_stale(self, usage_id: int, boundary: datetime, now: datetime) -> bool:
        """Zero a counter whose last activity predates ``boundary``."""

        result = await self.session.execute(
            update(SubscriptionUsage)
            .where(
                SubscriptionUsage.id == usage_id,
                self._last_activity() < boundary,
            )
            .values(used=0, last_used_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def refresh(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        await self.session.refresh(usage)
        return usage

    async def list_for_subscription(self, subscription_id: UUID) -> list[SubscriptionUsage]:
        result = await self.session.execute(
            select(SubscriptionUsage)
            .where(SubscriptionUsage.subscription_id == subscription_id)
            .order_by(SubscriptionUsage.key)
        )
        return list(result.scalars().all())

    async def add_all(self, usages: Iterable[SubscriptionUsage]) -> None:
        self.session.add_all(list(usages))
        await self.session.flush()

    async def save(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        self.session.add(usage)
        await self.session.flush()
        return usage

    async def reset_all(self, subscription_id: UUID, now: datetime) -> int:
        result = await self.session.execute(
            update(SubscriptionUsage)
            .where(SubscriptionUsage.subscription_id == subscription_id)
            .values(used=0, last_used_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def _last_activity(self):
        return func.coalesce(SubscriptionUsage.last_used_at, SubscriptionUsage.updated_at)

    def _subscription_usable(self, now: datetime):
        """SQL twin of ``Subscription.is_usable`` for the counter's owner."""

        return (
            select(Subscription.id)
            .where(
                Subscription.id == SubscriptionUsage.subscription_id,
                Subscription.status.in_(SubscriptionStatus.active_statuses()),
                or_(
                    Subscription.ends_at.is_(None),
                    Subscription.ends_at > now,
                    Subscription.grace_ends_at > now,
                ),
            )
            .correlate(SubscriptionUsage)
            .exists()
        )

    async def reset_candidate_ids(
        self,
        reset_period: FeatureResetPeriod,
        boundary: datetime,
        limit: Optional[int] = None,
    ) -> Sequence[int]:
        """Used counters of active subscriptions whose feature resets on
        ``reset_period`` and whose last activity predates ``boundary``."""

        query = (
            select(SubscriptionUsage.id)
            .join(Subscription, Subscription.id == SubscriptionUsage.subscription_id)
            .join(
                PlanFeature,
                (PlanFeature.plan_id == Subscription.plan_id)
                & (PlanFeature.key == SubscriptionUsage.key),
            )
            .where(
                PlanFeature.reset_period == reset_period,
                Subscription.deleted_at.is_(None),
                Subscription.status.in_(SubscriptionStatus.active_statuses()),
                SubscriptionUsage.used > 0,
                self._last_activity() < boundary,
            )
            .order_by(self._last_activity())
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())
