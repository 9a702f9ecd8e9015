"""Cancellation."""
from __future__ import annotations

import logging

from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import SubscriptionCanceled
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.services.actions.base import BaseAction

logger = logging.getLogger(__name__)


class CancelSubscriptionAction(BaseAction):
    """Mark an active or trialing subscription canceled.

    Dates are left untouched; the subscription can be resumed while its
    paid window lasts.
    """

    def __init__(self, session, subscription: Subscription, **kwargs):
        super().__init__(session, **kwargs)
        self.subscription = subscription

    async def validate(self) -> None:
        self.validator.validate_cancellation_eligibility(self.subscription)
        self.validator.validate_status_transition(
            self.subscription.status, SubscriptionStatus.CANCELED
        )

    async def execute(self) -> Subscription:
        subscription = self.subscription
        subscription.status = SubscriptionStatus.CANCELED
        await self.subscriptions.save(subscription)
        logger.info("Subscription %s canceled", subscription.id)
        self.emit(SubscriptionCanceled(**self._envelope(subscription), immediately=False))
        return subscription
