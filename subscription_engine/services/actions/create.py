"""Subscribe and start-trial actions."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from subscription_engine.db.models.plan import Plan, PlanPricing
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import (
    SubscriptionCreated,
    SubscriptionStarted,
    TrialStarted,
)
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.domain.time_windows import compute_window
from subscription_engine.services.actions.base import BaseAction

logger = logging.getLogger(__name__)


class SubscribeAction(BaseAction):
    """Create a new active subscription, optionally preceded by a trial."""

    def __init__(
        self,
        session,
        subscriber: SubscriberRef,
        plan_id: str,
        plan_pricing_id: int,
        *,
        trial_days: Optional[int] = None,
        auto_renewal: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> None:
        super().__init__(session, **kwargs)
        self.subscriber = subscriber
        self.plan_id = plan_id
        self.plan_pricing_id = plan_pricing_id
        self.trial_days = trial_days
        self.auto_renewal = auto_renewal
        self.metadata = metadata or {}
        self.plan: Optional[Plan] = None
        self.pricing: Optional[PlanPricing] = None

    @property
    def target_status(self) -> SubscriptionStatus:
        return SubscriptionStatus.TRIAL if self.trial_days else SubscriptionStatus.ACTIVE

    async def validate(self) -> None:
        self.validator.validate_status_transition(SubscriptionStatus.PENDING, self.target_status)
        await self.subscriptions.lock_subscriber(self.subscriber)
        self.plan, self.pricing = await self._load_catalog(self.plan_id, self.plan_pricing_id)
        if self.target_status is SubscriptionStatus.TRIAL:
            self.validator.validate_trial_duration(self.trial_days)
            await self.validator.validate_trial_eligibility(
                self.subscriptions, self.subscriber, self.plan
            )
        await self.validator.ensure_no_active_subscription(self.subscriptions, self.subscriber)

    async def execute(self) -> Subscription:
        window = compute_window(
            self.now,
            self.pricing.duration_in_days,
            self.config.grace_period_days,
            trial_days=self.trial_days,
        )
        auto_renewal = (
            self.config.auto_renewal_default if self.auto_renewal is None else self.auto_renewal
        )
        subscription = Subscription(
            id=uuid.uuid4(),
            subscriber_type=self.subscriber.type,
            subscriber_id=self.subscriber.id,
            plan_id=self.plan.id,
            plan_pricing_id=self.pricing.id,
            status=self.target_status,
            is_auto_renewal=auto_renewal,
            starts_at=window.starts_at,
            ends_at=window.ends_at,
            grace_ends_at=window.grace_ends_at,
            trial_ends_at=window.trial_ends_at,
        )
        self.validator.validate_subscription_state(subscription)
        await self.subscriptions.save(subscription)
        logger.info(
            "Subscription %s created for %s on plan %s",
            subscription.id,
            self.subscriber.key,
            self.plan.id,
        )
        self._emit_created(subscription)
        return subscription

    def _emit_created(self, subscription: Subscription) -> None:
        envelope = self._envelope(subscription)
        self.emit(
            SubscriptionCreated(
                **envelope,
                plan_id=subscription.plan_id,
                plan_pricing_id=subscription.plan_pricing_id,
                metadata=self.metadata,
            )
        )
        self.emit(SubscriptionStarted(**envelope, is_trial=bool(self.trial_days)))
        if self.trial_days:
            self.emit(
                TrialStarted(
                    **envelope,
                    trial_days=self.trial_days,
                    trial_ends_at=subscription.trial_ends_at,
                )
            )


class StartTrialAction(SubscribeAction):
    """Create a subscription in trial status.

    ``trial_days`` falls back to the configured trial period.
    """

    def __init__(self, session, subscriber, plan_id, plan_pricing_id, *, trial_days=None, **kwargs):
        super().__init__(session, subscriber, plan_id, plan_pricing_id, **kwargs)
        self.trial_days = trial_days if trial_days is not None else self.config.trial_period_days

    @property
    def target_status(self) -> SubscriptionStatus:
        return SubscriptionStatus.TRIAL

    def _emit_created(self, subscription: Subscription) -> None:
        self.emit(
            TrialStarted(
                **self._envelope(subscription),
                trial_days=self.trial_days,
                trial_ends_at=subscription.trial_ends_at,
            )
        )
