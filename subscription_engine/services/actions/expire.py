"""Expiry of subscriptions past their paid and grace windows."""
from __future__ import annotations

import logging

from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import SubscriptionExpired
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.services.actions.base import BaseAction

logger = logging.getLogger(__name__)


class ExpireSubscriptionAction(BaseAction):
    def __init__(self, session, subscription: Subscription, **kwargs):
        super().__init__(session, **kwargs)
        self.subscription = subscription

    async def validate(self) -> None:
        self.validator.validate_expiration_eligibility(self.subscription)
        self.validator.validate_status_transition(
            self.subscription.status, SubscriptionStatus.EXPIRED
        )

    async def execute(self) -> Subscription:
        subscription = self.subscription
        was_in_grace = subscription.is_in_grace_period(self.now)
        subscription.status = SubscriptionStatus.EXPIRED
        await self.subscriptions.save(subscription)
        logger.info("Subscription %s expired (grace=%s)", subscription.id, was_in_grace)
        self.emit(
            SubscriptionExpired(
                **self._envelope(subscription), was_in_grace_period=was_in_grace
            )
        )
        return subscription
