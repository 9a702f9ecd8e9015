"""Plan change: cancel the current subscription and start a replacement."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Protocol

from subscription_engine.core.exceptions import BusinessRuleError, ReasonCode
from subscription_engine.db.models.plan import Plan, PlanFeature, PlanPricing
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.subscription_usage import SubscriptionUsage
from subscription_engine.domain.events import SubscriptionChanged
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.domain.time_windows import compute_window, feature_valid_until
from subscription_engine.services.actions.base import BaseAction
from subscription_engine.services.usage_ledger import numeric_limit

logger = logging.getLogger(__name__)


class ProrationCalculator(Protocol):
    """Computes the amount owed (positive) or credited (negative) for a change."""

    def __call__(
        self,
        current: Subscription,
        old_pricing: PlanPricing,
        new_pricing: PlanPricing,
        now: datetime,
    ) -> Optional[Decimal]:
        ...


def classify_change(old_pricing: PlanPricing, new_pricing: PlanPricing) -> str:
    if new_pricing.price > old_pricing.price:
        return "upgrade"
    if new_pricing.price < old_pricing.price:
        return "downgrade"
    return "lateral"


class ChangePlanAction(BaseAction):
    """
    Move a subscriber's active subscription to another plan or pricing.

    The current subscription is canceled with auto-renewal switched off and a
    new active subscription with fresh dates replaces it. Upgrades and lateral
    moves carry usage counters over unchanged; downgrades zero them when
    ``reset_usage_on_plan_change`` is enabled.
    """

    def __init__(
        self,
        session,
        subscriber: SubscriberRef,
        new_plan_id: str,
        new_plan_pricing_id: int,
        *,
        proration_calculator: Optional[ProrationCalculator] = None,
        **kwargs,
    ) -> None:
        super().__init__(session, **kwargs)
        self.subscriber = subscriber
        self.new_plan_id = new_plan_id
        self.new_plan_pricing_id = new_plan_pricing_id
        self.proration_calculator = proration_calculator
        self.current: Optional[Subscription] = None
        self.new_plan: Optional[Plan] = None
        self.new_pricing: Optional[PlanPricing] = None
        self.old_pricing: Optional[PlanPricing] = None
        self.change_type = "lateral"

    async def validate(self) -> None:
        await self.subscriptions.lock_subscriber(self.subscriber)
        current = await self.subscriptions.get_active_for(self.subscriber, for_update=True)
        if current is None:
            raise BusinessRuleError.no_active_subscription()

        self.new_plan, self.new_pricing = await self._load_catalog(
            self.new_plan_id, self.new_plan_pricing_id
        )
        if (
            current.plan_id == self.new_plan.id
            and current.plan_pricing_id == self.new_pricing.id
        ):
            raise BusinessRuleError(
                ReasonCode.SAME_PLAN,
                "Subscription is already on this plan and pricing",
                context={"plan_id": current.plan_id, "plan_pricing_id": current.plan_pricing_id},
            )
        if current.status is SubscriptionStatus.TRIAL and not self.config.allow_plan_change_during_trial:
            raise BusinessRuleError(
                ReasonCode.PLAN_CHANGE_DURING_TRIAL,
                "Plan changes are not allowed during a trial",
            )
        self.validator.validate_status_transition(current.status, SubscriptionStatus.CANCELED)

        self.old_pricing = await self.plans.get_pricing(current.plan_pricing_id)
        self.change_type = classify_change(self.old_pricing, self.new_pricing)
        if self.change_type == "downgrade":
            if not self.config.allow_downgrades:
                raise BusinessRuleError(
                    ReasonCode.DOWNGRADE_NOT_ALLOWED,
                    "Plan downgrades are not allowed",
                    context={"plan_id": current.plan_id, "new_plan_id": self.new_plan.id},
                )
            if self.config.prevent_downgrade_with_excess_usage:
                await self._check_usage_fits(current)
        self.current = current

    async def _check_usage_fits(self, current: Subscription) -> None:
        features = await self._new_features()
        for usage in await self.usages.list_for_subscription(current.id):
            feature = features.get(usage.key)
            limit = numeric_limit(feature.limit) if feature else None
            if limit is not None and usage.used > limit:
                raise BusinessRuleError(
                    ReasonCode.DOWNGRADE_EXCEEDS_USAGE,
                    f"Current usage of '{usage.key}' exceeds the new plan's limit",
                    context={"feature_key": usage.key, "used": usage.used, "limit": limit},
                )

    async def _new_features(self) -> Dict[str, PlanFeature]:
        return {feature.key: feature for feature in await self.plans.list_features(self.new_plan.id)}

    async def execute(self) -> Subscription:
        current = self.current
        proration = None
        if self.proration_calculator is not None:
            proration = self.proration_calculator(
                current, self.old_pricing, self.new_pricing, self.now
            )

        current.status = SubscriptionStatus.CANCELED
        current.is_auto_renewal = False
        await self.subscriptions.save(current)

        window = compute_window(
            self.now, self.new_pricing.duration_in_days, self.config.grace_period_days
        )
        replacement = Subscription(
            id=uuid.uuid4(),
            subscriber_type=self.subscriber.type,
            subscriber_id=self.subscriber.id,
            plan_id=self.new_plan.id,
            plan_pricing_id=self.new_pricing.id,
            status=SubscriptionStatus.ACTIVE,
            is_auto_renewal=self.config.auto_renewal_default,
            starts_at=window.starts_at,
            ends_at=window.ends_at,
            grace_ends_at=window.grace_ends_at,
        )
        await self.subscriptions.save(replacement)

        usage_reset = self.change_type == "downgrade" and self.config.reset_usage_on_plan_change
        await self._carry_over_usages(current, replacement, reset=usage_reset)

        logger.info(
            "Subscription plan changed for %s: %s (%s) -> %s (%s), %s, usage_reset=%s",
            self.subscriber.key,
            current.id,
            current.plan_id,
            replacement.id,
            replacement.plan_id,
            self.change_type,
            usage_reset,
        )
        self.emit(
            SubscriptionChanged(
                **self._envelope(replacement),
                previous_subscription_id=current.id,
                old_plan_id=current.plan_id,
                new_plan_id=replacement.plan_id,
                change_type=self.change_type,
                usage_reset=usage_reset,
                proration_amount=proration,
            )
        )
        return replacement

    async def _carry_over_usages(
        self, old: Subscription, new: Subscription, *, reset: bool
    ) -> None:
        features = await self._new_features()
        copies = []
        for usage in await self.usages.list_for_subscription(old.id):
            feature = features.get(usage.key)
            copies.append(
                SubscriptionUsage(
                    subscription_id=new.id,
                    key=usage.key,
                    used=0 if reset else usage.used,
                    last_used_at=None if reset else usage.last_used_at,
                    valid_until=(
                        feature_valid_until(feature.reset_period, self.now) if feature else None
                    ),
                    created_at=self.now,
                    updated_at=self.now,
                )
            )
        await self.usages.add_all(copies)
