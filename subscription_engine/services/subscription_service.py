"""
Transactional entry point for lifecycle actions and usage metering.

Every mutating call opens its own short transaction, runs exactly one action
inside it and publishes the action's events only after the commit. Events
attached to an error (a failed renewal, for instance) are published before
the error is re-raised.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import SubscriptionSettings
from subscription_engine.core.exceptions import (
    BusinessRuleError,
    SubscriptionEngineError,
    SubscriptionNotFoundError,
)
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import FeatureUsageReset
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.domain.time_windows import Clock, utcnow
from subscription_engine.repositories.subscription_repo import SubscriptionRepo
from subscription_engine.services.actions import (
    BaseAction,
    CancelSubscriptionAction,
    ChangePlanAction,
    ConsumeFeatureAction,
    DuplicateSubscriptionAction,
    ExpireSubscriptionAction,
    ProrationCalculator,
    RenewSubscriptionAction,
    ResetFeatureUsageAction,
    ResumeSubscriptionAction,
    StartTrialAction,
    SubscribeAction,
)
from subscription_engine.services.event_sink import EventSink, LoggingEventSink, publish_all
from subscription_engine.services.usage_ledger import UsageLedger
from subscription_engine.services.validator import SubscriptionValidator

logger = logging.getLogger(__name__)

ActionT = TypeVar("ActionT", bound=BaseAction)


class SubscriptionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: SubscriptionSettings,
        clock: Clock = utcnow,
        event_sink: Optional[EventSink] = None,
        proration_calculator: Optional[ProrationCalculator] = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.clock = clock
        self.event_sink = event_sink or LoggingEventSink()
        self.proration_calculator = proration_calculator
        self.validator = SubscriptionValidator(config)

    def _action_kwargs(self) -> Dict[str, Any]:
        return {"config": self.config, "clock": self.clock, "validator": self.validator}

    async def run(self, build: Callable[[AsyncSession], Awaitable[ActionT]]) -> ActionT:
        """Build and handle one action in its own transaction, then publish."""

        try:
            async with self.session_factory() as session, session.begin():
                action = await build(session)
                await action.handle()
        except SubscriptionEngineError as exc:
            if exc.events:
                await publish_all(self.event_sink, exc.events)
            raise
        await publish_all(self.event_sink, action.result.events)
        return action

    async def _locked(
        self,
        session: AsyncSession,
        subscription_id: UUID,
        subscriber: Optional[SubscriberRef] = None,
    ) -> Subscription:
        subscription = await SubscriptionRepo(session).get_for_update(subscription_id)
        if subscription is None or (
            subscriber is not None and not subscription.belongs_to(subscriber)
        ):
            raise SubscriptionNotFoundError(
                "Subscription not found", context={"subscription_id": str(subscription_id)}
            )
        return subscription

    async def _active_for(
        self, session: AsyncSession, subscriber: SubscriberRef, *, for_update: bool = False
    ) -> Subscription:
        subscription = await SubscriptionRepo(session).get_active_for(
            subscriber, for_update=for_update
        )
        if subscription is None:
            raise BusinessRuleError.no_active_subscription()
        return subscription

    # -- creation ------------------------------------------------------------

    async def subscribe(
        self,
        subscriber: SubscriberRef,
        plan_id: str,
        plan_pricing_id: int,
        *,
        trial_days: Optional[int] = None,
        auto_renewal: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        async def build(session: AsyncSession) -> SubscribeAction:
            return SubscribeAction(
                session,
                subscriber,
                plan_id,
                plan_pricing_id,
                trial_days=trial_days,
                auto_renewal=auto_renewal,
                metadata=metadata,
                **self._action_kwargs(),
            )

        return (await self.run(build)).result.subscription

    async def start_trial(
        self,
        subscriber: SubscriberRef,
        plan_id: str,
        plan_pricing_id: int,
        *,
        trial_days: Optional[int] = None,
    ) -> Subscription:
        async def build(session: AsyncSession) -> StartTrialAction:
            return StartTrialAction(
                session,
                subscriber,
                plan_id,
                plan_pricing_id,
                trial_days=trial_days,
                **self._action_kwargs(),
            )

        return (await self.run(build)).result.subscription

    async def duplicate(
        self,
        subscriber: SubscriberRef,
        source_subscription_id: UUID,
        *,
        start_date: Optional[datetime] = None,
        with_trial: bool = False,
    ) -> Subscription:
        async def build(session: AsyncSession) -> DuplicateSubscriptionAction:
            return DuplicateSubscriptionAction(
                session,
                subscriber,
                source_subscription_id,
                start_date=start_date,
                with_trial=with_trial,
                **self._action_kwargs(),
            )

        return (await self.run(build)).result.subscription

    async def change_plan(
        self, subscriber: SubscriberRef, new_plan_id: str, new_plan_pricing_id: int
    ) -> Subscription:
        async def build(session: AsyncSession) -> ChangePlanAction:
            return ChangePlanAction(
                session,
                subscriber,
                new_plan_id,
                new_plan_pricing_id,
                proration_calculator=self.proration_calculator,
                **self._action_kwargs(),
            )

        return (await self.run(build)).result.subscription

    # -- transitions ---------------------------------------------------------

    async def renew(
        self,
        subscription_id: UUID,
        *,
        subscriber: Optional[SubscriberRef] = None,
        is_auto_renewal: bool = False,
    ) -> Subscription:
        async def build(session: AsyncSession) -> RenewSubscriptionAction:
            subscription = await self._locked(session, subscription_id, subscriber)
            return RenewSubscriptionAction(
                session, subscription, is_auto_renewal=is_auto_renewal, **self._action_kwargs()
            )

        return (await self.run(build)).result.subscription

    async def cancel(
        self, subscription_id: UUID, *, subscriber: Optional[SubscriberRef] = None
    ) -> Subscription:
        async def build(session: AsyncSession) -> CancelSubscriptionAction:
            subscription = await self._locked(session, subscription_id, subscriber)
            return CancelSubscriptionAction(session, subscription, **self._action_kwargs())

        return (await self.run(build)).result.subscription

    async def cancel_current(self, subscriber: SubscriberRef) -> Subscription:
        async def build(session: AsyncSession) -> CancelSubscriptionAction:
            subscription = await self._active_for(session, subscriber, for_update=True)
            return CancelSubscriptionAction(session, subscription, **self._action_kwargs())

        return (await self.run(build)).result.subscription

    async def resume(
        self, subscription_id: UUID, *, subscriber: Optional[SubscriberRef] = None
    ) -> Subscription:
        async def build(session: AsyncSession) -> ResumeSubscriptionAction:
            subscription = await self._locked(session, subscription_id, subscriber)
            return ResumeSubscriptionAction(session, subscription, **self._action_kwargs())

        return (await self.run(build)).result.subscription

    async def resume_latest(self, subscriber: SubscriberRef) -> Subscription:
        """Resume the most recently canceled subscription still in its window."""

        async def build(session: AsyncSession) -> ResumeSubscriptionAction:
            candidate = await SubscriptionRepo(session).latest_resumable(subscriber, self.clock())
            if candidate is None:
                raise SubscriptionNotFoundError("No resumable subscription found")
            subscription = await self._locked(session, candidate.id, subscriber)
            return ResumeSubscriptionAction(session, subscription, **self._action_kwargs())

        return (await self.run(build)).result.subscription

    async def expire(self, subscription_id: UUID) -> Subscription:
        async def build(session: AsyncSession) -> ExpireSubscriptionAction:
            subscription = await self._locked(session, subscription_id)
            return ExpireSubscriptionAction(session, subscription, **self._action_kwargs())

        return (await self.run(build)).result.subscription

    # -- usage ---------------------------------------------------------------

    async def consume(
        self, subscriber: SubscriberRef, feature_key: str, amount: int = 1
    ) -> ConsumeFeatureAction:
        """Consume from the subscriber's active subscription.

        Returns the executed action so callers can read ``remaining_usage``
        and ``is_unlimited``.
        """

        async def build(session: AsyncSession) -> ConsumeFeatureAction:
            subscription = await self._active_for(session, subscriber, for_update=True)
            return ConsumeFeatureAction(
                session, subscription, feature_key, amount, **self._action_kwargs()
            )

        return await self.run(build)

    async def reset_feature_usage(
        self, subscriber: SubscriberRef, feature_key: str
    ) -> FeatureUsageReset:
        async def build(session: AsyncSession) -> ResetFeatureUsageAction:
            subscription = await self._active_for(session, subscriber)
            return ResetFeatureUsageAction(
                session, subscription, feature_key, **self._action_kwargs()
            )

        action = await self.run(build)
        return action.result.events[0]

    async def feature_usage(self, subscriber: SubscriberRef, feature_key: str) -> Dict[str, Any]:
        self.validator.validate_feature_key(feature_key)
        async with self.session_factory() as session, session.begin():
            subscription = await self._active_for(session, subscriber)
            ledger = self._ledger(session)
            feature = self.validator.validate_feature_exists(
                await ledger.get_feature(subscription, feature_key),
                feature_key,
                subscription.plan_id,
            )
            remaining = await ledger.get_remaining_usage(subscription, feature_key)
            return {
                "subscription_id": subscription.id,
                "feature_key": feature_key,
                "value": feature.limit,
                "used": await ledger.get_feature_usage(subscription, feature_key),
                "remaining": remaining,
                "unlimited": remaining is None,
                "reset_period": feature.reset_period.value,
            }

    async def usage_summary(
        self, subscriber: SubscriberRef, *, include_percentage: bool = False
    ) -> Dict[str, Dict[str, Any]]:
        async with self.session_factory() as session:
            subscription = await self._active_for(session, subscriber)
            return await self._ledger(session).usage_summary(
                subscription, include_percentage=include_percentage
            )

    # -- queries -------------------------------------------------------------

    async def current_subscription(self, subscriber: SubscriberRef) -> Optional[Subscription]:
        async with self.session_factory() as session:
            return await SubscriptionRepo(session).get_active_for(subscriber)

    async def history(self, subscriber: SubscriberRef) -> List[Subscription]:
        async with self.session_factory() as session:
            return await SubscriptionRepo(session).history(subscriber)

    async def validation_summary(
        self, subscription_id: UUID, *, subscriber: Optional[SubscriberRef] = None
    ) -> Dict[str, Any]:
        async with self.session_factory() as session:
            subscription = await SubscriptionRepo(session).get(subscription_id)
            if subscription is None or (
                subscriber is not None and not subscription.belongs_to(subscriber)
            ):
                raise SubscriptionNotFoundError("Subscription not found")
            return self.validator.validation_summary(subscription, self.clock())

    def _ledger(self, session: AsyncSession) -> UsageLedger:
        return UsageLedger(
            session, config=self.config, clock=self.clock, validator=self.validator
        )
