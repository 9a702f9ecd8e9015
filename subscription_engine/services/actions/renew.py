"""Renewal: extend the paid window and reactivate if needed."""
from __future__ import annotations

import logging

from subscription_engine.core.exceptions import (
    BusinessRuleError,
    PlanNotAvailableError,
    ReasonCode,
)
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import SubscriptionRenewalFailed, SubscriptionRenewed
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.time_windows import extend_end, grace_end_for
from subscription_engine.services.actions.base import BaseAction

logger = logging.getLogger(__name__)


class RenewSubscriptionAction(BaseAction):
    """Renew an active, expired or inactive subscription.

    When the plan or pricing has been retired the renewal fails without
    touching the subscription; the raised error carries a
    :class:`SubscriptionRenewalFailed` event for the caller to publish.
    """

    def __init__(self, session, subscription: Subscription, *, is_auto_renewal: bool = False, **kwargs):
        super().__init__(session, **kwargs)
        self.subscription = subscription
        self.is_auto_renewal = is_auto_renewal
        self.pricing = None

    @classmethod
    def for_manual_renewal(cls, session, subscription: Subscription, **kwargs) -> "RenewSubscriptionAction":
        return cls(session, subscription, is_auto_renewal=False, **kwargs)

    @classmethod
    def for_auto_renewal(cls, session, subscription: Subscription, **kwargs) -> "RenewSubscriptionAction":
        return cls(session, subscription, is_auto_renewal=True, **kwargs)

    async def validate(self) -> None:
        subscription = self.subscription
        self.validator.validate_renewal_eligibility(subscription)
        try:
            _, self.pricing = await self._load_catalog(
                subscription.plan_id, subscription.plan_pricing_id
            )
        except PlanNotAvailableError as exc:
            logger.warning("Renewal of %s failed: %s", subscription.id, exc.message)
            raise BusinessRuleError(
                ReasonCode.RENEWAL_FAILED,
                f"Subscription cannot be renewed: {exc.message}",
                context={"subscription_id": str(subscription.id), **exc.context},
                events=[
                    SubscriptionRenewalFailed(
                        **self._envelope(subscription), reason=exc.message
                    )
                ],
            ) from exc
        # ACTIVE -> ACTIVE is not an edge of the graph; only reactivation is checked.
        if subscription.status is not SubscriptionStatus.ACTIVE:
            await self._ensure_can_reactivate(subscription)

    async def execute(self) -> Subscription:
        subscription = self.subscription
        previous_ends_at = subscription.ends_at
        if self.pricing.is_lifetime:
            subscription.ends_at = None
        else:
            subscription.ends_at = extend_end(
                subscription.ends_at, self.pricing.duration_in_days, self.now
            )
        subscription.grace_ends_at = grace_end_for(
            subscription.ends_at, self.config.grace_period_days
        )
        subscription.status = SubscriptionStatus.ACTIVE
        await self.subscriptions.save(subscription)
        logger.info(
            "Subscription %s renewed until %s (auto=%s)",
            subscription.id,
            subscription.ends_at,
            self.is_auto_renewal,
        )
        self.emit(
            SubscriptionRenewed(
                **self._envelope(subscription),
                is_auto_renewal=self.is_auto_renewal,
                previous_ends_at=previous_ends_at,
                ends_at=subscription.ends_at,
            )
        )
        return subscription

    @property
    def new_end_date(self):
        self._require_executed()
        return self.subscription.ends_at
