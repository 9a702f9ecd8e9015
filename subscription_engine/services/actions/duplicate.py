"""Start a fresh subscription episode from a finished one."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional
from uuid import UUID

from subscription_engine.core.exceptions import InvalidStateError, SubscriptionNotFoundError
from subscription_engine.db.models.plan import PlanPricing
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.subscription_usage import SubscriptionUsage
from subscription_engine.domain.events import (
    SubscriptionCreated,
    SubscriptionStarted,
    TrialStarted,
)
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.domain.time_windows import compute_window, feature_valid_until
from subscription_engine.services.actions.base import BaseAction

logger = logging.getLogger(__name__)

DUPLICABLE_STATUSES = (
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.INACTIVE,
)


class DuplicateSubscriptionAction(BaseAction):
    """
    Create a new subscription on the source's plan and pricing.

    The new episode gets fresh dates from ``start_date`` (default: now) and a
    zeroed copy of every usage counter the source had, each with a
    ``valid_until`` recomputed from the feature's reset period.
    """

    def __init__(
        self,
        session,
        subscriber: SubscriberRef,
        source_subscription_id: UUID,
        *,
        start_date: Optional[datetime] = None,
        with_trial: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(session, **kwargs)
        self.subscriber = subscriber
        self.source_subscription_id = source_subscription_id
        self.start_date = start_date
        self.with_trial = with_trial
        self.source: Optional[Subscription] = None
        self.pricing: Optional[PlanPricing] = None

    async def validate(self) -> None:
        source = await self.subscriptions.get(self.source_subscription_id)
        if source is None or not source.belongs_to(self.subscriber):
            raise SubscriptionNotFoundError(
                "Subscription not found",
                context={"subscription_id": str(self.source_subscription_id)},
            )
        if source.status not in DUPLICABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot duplicate a {source.status.value} subscription",
                context={"status": source.status.value},
            )
        await self.subscriptions.lock_subscriber(self.subscriber)
        await self.validator.ensure_no_active_subscription(self.subscriptions, self.subscriber)
        plan, self.pricing = await self._load_catalog(source.plan_id, source.plan_pricing_id)
        if self.with_trial:
            self.validator.validate_trial_duration(self.config.trial_period_days)
            await self.validator.validate_trial_eligibility(
                self.subscriptions, self.subscriber, plan
            )
        self.source = source

    async def execute(self) -> Subscription:
        source = self.source
        start = self.start_date or self.now
        trial_days = self.config.trial_period_days if self.with_trial else None
        window = compute_window(
            start,
            self.pricing.duration_in_days,
            self.config.grace_period_days,
            trial_days=trial_days,
        )
        subscription = Subscription(
            id=uuid.uuid4(),
            subscriber_type=self.subscriber.type,
            subscriber_id=self.subscriber.id,
            plan_id=source.plan_id,
            plan_pricing_id=source.plan_pricing_id,
            status=SubscriptionStatus.TRIAL if window.trial_ends_at else SubscriptionStatus.ACTIVE,
            is_auto_renewal=self.config.auto_renewal_default,
            starts_at=window.starts_at,
            ends_at=window.ends_at,
            grace_ends_at=window.grace_ends_at,
            trial_ends_at=window.trial_ends_at,
        )
        await self.subscriptions.save(subscription)
        await self._copy_usages_zeroed(source, subscription, start)
        logger.info("Subscription %s duplicated as %s", source.id, subscription.id)

        envelope = self._envelope(subscription)
        self.emit(
            SubscriptionCreated(
                **envelope,
                plan_id=subscription.plan_id,
                plan_pricing_id=subscription.plan_pricing_id,
                metadata={
                    "action": "duplicate",
                    "original_subscription_id": str(source.id),
                    "with_trial": self.with_trial,
                },
            )
        )
        self.emit(SubscriptionStarted(**envelope, is_trial=bool(window.trial_ends_at)))
        if window.trial_ends_at:
            self.emit(
                TrialStarted(
                    **envelope,
                    trial_days=trial_days,
                    trial_ends_at=window.trial_ends_at,
                )
            )
        return subscription

    async def _copy_usages_zeroed(
        self, source: Subscription, target: Subscription, start: datetime
    ) -> None:
        features = {
            feature.key: feature for feature in await self.plans.list_features(source.plan_id)
        }
        copies = []
        for usage in await self.usages.list_for_subscription(source.id):
            feature = features.get(usage.key)
            copies.append(
                SubscriptionUsage(
                    subscription_id=target.id,
                    key=usage.key,
                    used=0,
                    last_used_at=None,
                    valid_until=(
                        feature_valid_until(feature.reset_period, start) if feature else None
                    ),
                    created_at=self.now,
                    updated_at=self.now,
                )
            )
        await self.usages.add_all(copies)
