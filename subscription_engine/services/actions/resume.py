"""Resumption of a canceled or expired subscription inside its paid window."""
from __future__ import annotations

import logging
from typing import Optional

from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import SubscriptionStarted
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.services.actions.base import BaseAction

logger = logging.getLogger(__name__)


class ResumeSubscriptionAction(BaseAction):
    def __init__(self, session, subscription: Subscription, **kwargs):
        super().__init__(session, **kwargs)
        self.subscription = subscription

    async def validate(self) -> None:
        subscription = self.subscription
        self.validator.validate_resumption_eligibility(subscription, self.now)
        await self._load_catalog(subscription.plan_id, subscription.plan_pricing_id)
        await self._ensure_can_reactivate(subscription)

    async def execute(self) -> Subscription:
        subscription = self.subscription
        subscription.status = SubscriptionStatus.ACTIVE
        await self.subscriptions.save(subscription)
        logger.info("Subscription %s resumed", subscription.id)
        self.emit(
            SubscriptionStarted(
                **self._envelope(subscription), is_trial=False, resumed=True
            )
        )
        return subscription

    @property
    def days_remaining(self) -> Optional[int]:
        self._require_executed()
        return self.subscription.days_remaining(self.now)

    @property
    def in_grace_period(self) -> bool:
        self._require_executed()
        return self.subscription.is_in_grace_period(self.now)
