"""Repository utilities for subscriptions."""
from __future__ import annotations

import datetime as dt
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef


class SubscriptionRepo:
    """Data-access helpers for :class:`Subscription`.

    Soft-deleted rows are invisible to every query issued here.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _live(self):
        return select(Subscription).where(Subscription.deleted_at.is_(None))

    def _owned_by(self, subscriber: SubscriberRef):
        return and_(
            Subscription.subscriber_type == subscriber.type,
            Subscription.subscriber_id == subscriber.id,
        )

    async def get(self, subscription_id: UUID) -> Subscription | None:
        result = await self.session.execute(
            self._live().where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(
        self, subscription_id: UUID, *, skip_locked: bool = False
    ) -> Subscription | None:
        """Load a subscription holding its row lock until the transaction ends."""

        result = await self.session.execute(
            self._live()
            .where(Subscription.id == subscription_id)
            .with_for_update(skip_locked=skip_locked)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock_subscriber(self, subscriber: SubscriberRef) -> None:
        """Serialize creators of active subscriptions for one subscriber.

        No row expresses "the subscriber's active subscription" before it
        exists, so PostgreSQL uses a transaction-scoped advisory lock. SQLite
        already serializes writers at the database level.
        """

        if self.session.get_bind().dialect.name != "postgresql":
            return
        await self.session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"subscriber:{subscriber.key}"},
        )

    async def get_active_for(
        self,
        subscriber: SubscriberRef,
        *,
        exclude_id: Optional[UUID] = None,
        for_update: bool = False,
    ) -> Subscription | None:
        query = self._live().where(
            self._owned_by(subscriber),
            Subscription.status.in_(SubscriptionStatus.active_statuses()),
        )
        if exclude_id is not None:
            query = query.where(Subscription.id != exclude_id)
        query = query.order_by(Subscription.created_at.desc()).limit(1)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def has_active(
        self, subscriber: SubscriberRef, *, exclude_id: Optional[UUID] = None
    ) -> bool:
        return await self.get_active_for(subscriber, exclude_id=exclude_id) is not None

    async def has_trialed(self, subscriber: SubscriberRef, plan_id: str) -> bool:
        """Whether any subscription of this subscriber to the plan had a trial."""

        result = await self.session.execute(
            select(func.count())
            .select_from(Subscription)
            .where(
                self._owned_by(subscriber),
                Subscription.plan_id == plan_id,
                Subscription.trial_ends_at.is_not(None),
            )
        )
        return int(result.scalar_one() or 0) > 0

    async def latest_resumable(
        self, subscriber: SubscriberRef, now: dt.datetime
    ) -> Subscription | None:
        """Most recently touched canceled subscription still inside its paid window."""

        result = await self.session.execute(
            self._live()
            .where(
                self._owned_by(subscriber),
                Subscription.status == SubscriptionStatus.CANCELED,
                or_(
                    Subscription.ends_at.is_(None),
                    Subscription.ends_at > now,
                    Subscription.grace_ends_at > now,
                ),
            )
            .order_by(Subscription.updated_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def history(self, subscriber: SubscriberRef) -> list[Subscription]:
        result = await self.session.execute(
            self._live()
            .where(self._owned_by(subscriber))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        return list(result.scalars().all())

    async def save(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def renewal_candidate_ids(
        self,
        now: dt.datetime,
        lookahead: dt.timedelta,
        limit: Optional[int] = None,
    ) -> Sequence[UUID]:
        """Auto-renewing active subscriptions ending within the lookahead window."""

        query = (
            select(Subscription.id)
            .where(
                Subscription.deleted_at.is_(None),
                Subscription.is_auto_renewal.is_(True),
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.ends_at.is_not(None),
                Subscription.ends_at <= now + lookahead,
                Subscription.ends_at > now,
            )
            .order_by(Subscription.ends_at)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def expiry_candidate_ids(
        self, now: dt.datetime, limit: Optional[int] = None
    ) -> Sequence[UUID]:
        """Active-status subscriptions whose grace (or end, without grace) has passed.

        Lifetime subscriptions have neither date and are never selected.
        """

        query = (
            select(Subscription.id)
            .where(
                Subscription.deleted_at.is_(None),
                Subscription.status.in_(SubscriptionStatus.active_statuses()),
                or_(
                    and_(
                        Subscription.grace_ends_at.is_not(None),
                        Subscription.grace_ends_at <= now,
                    ),
                    and_(
                        Subscription.grace_ends_at.is_(None),
                        Subscription.ends_at.is_not(None),
                        Subscription.ends_at <= now,
                    ),
                ),
            )
            .order_by(Subscription.ends_at)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())
