"""Feature consumption as a lifecycle action."""
from __future__ import annotations

from typing import Optional

from subscription_engine.core.exceptions import BusinessRuleError
from subscription_engine.db.models.plan import PlanFeature
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import FeatureUsed
from subscription_engine.services.actions.base import BaseAction
from subscription_engine.services.usage_ledger import UsageLedger, numeric_limit


class ConsumeFeatureAction(BaseAction):
    """Consume ``amount`` units of a feature or raise ``insufficient_usage``."""

    def __init__(self, session, subscription: Subscription, feature_key: str, amount: int = 1, **kwargs):
        super().__init__(session, **kwargs)
        self.subscription = subscription
        self.feature_key = feature_key
        self.amount = amount
        self.ledger = UsageLedger(
            session, config=self.config, clock=self.clock, validator=self.validator
        )
        self.feature: Optional[PlanFeature] = None
        self._remaining: Optional[int] = None

    async def validate(self) -> None:
        self.validator.validate_feature_key(self.feature_key)
        self.validator.validate_consumption_amount(self.amount)
        if not self.subscription.is_usable(self.now):
            raise BusinessRuleError.no_active_subscription()
        self.feature = self.validator.validate_feature_consumption(
            await self.ledger.get_feature(self.subscription, self.feature_key),
            self.feature_key,
            self.subscription.plan_id,
            self.amount,
        )

    async def execute(self) -> Subscription:
        subscription = self.subscription
        if not await self.ledger.consume_feature(subscription, self.feature_key, self.amount):
            limit = numeric_limit(self.feature.limit)
            used = await self.ledger.get_feature_usage(subscription, self.feature_key)
            if limit is None or used + self.amount <= limit:
                # refused by the subscription check, not the limit
                raise BusinessRuleError.no_active_subscription()
            raise BusinessRuleError.insufficient_usage(
                self.feature_key,
                self.amount,
                max(0, limit - used) if limit is not None else None,
            )
        self._remaining = await self.ledger.get_remaining_usage(subscription, self.feature_key)
        self.emit(
            FeatureUsed(
                **self._envelope(subscription),
                feature_key=self.feature_key,
                amount=self.amount,
                remaining=self._remaining,
            )
        )
        return subscription

    @property
    def remaining_usage(self) -> Optional[int]:
        self._require_executed()
        return self._remaining

    @property
    def is_unlimited(self) -> bool:
        self._require_executed()
        return numeric_limit(self.feature.limit) is None
