"""Shared plumbing for lifecycle actions."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.config import SubscriptionSettings
from subscription_engine.core.exceptions import ActionNotExecutedError, BusinessRuleError
from subscription_engine.db.models.plan import Plan, PlanPricing
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.events import SubscriptionEvent
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.time_windows import Clock, utcnow
from subscription_engine.repositories.plan_repo import PlanRepo
from subscription_engine.repositories.subscription_repo import SubscriptionRepo
from subscription_engine.repositories.usage_repo import UsageRepo
from subscription_engine.services.validator import SubscriptionValidator


@dataclass
class ActionResult:
    """The subscription an action produced and the events to publish."""

    subscription: Subscription
    events: List[SubscriptionEvent] = field(default_factory=list)


class BaseAction:
    """
    Template for a single lifecycle transition.

    ``handle()`` runs ``validate()`` then ``execute()`` against the session it
    was built with. The caller owns the transaction: nothing is committed
    here and any exception leaves the rollback to the caller.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        config: SubscriptionSettings,
        clock: Clock = utcnow,
        validator: Optional[SubscriptionValidator] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.clock = clock
        self.validator = validator or SubscriptionValidator(config)
        self.subscriptions = SubscriptionRepo(session)
        self.plans = PlanRepo(session)
        self.usages = UsageRepo(session)
        self.now = clock()
        self._events: List[SubscriptionEvent] = []
        self._result: Optional[ActionResult] = None

    async def validate(self) -> None:
        """Raise if the action may not run. No validation by default."""

    async def execute(self) -> Subscription:
        raise NotImplementedError

    async def handle(self) -> ActionResult:
        self.now = self.clock()
        self._events = []
        await self.validate()
        subscription = await self.execute()
        self._result = ActionResult(subscription=subscription, events=list(self._events))
        return self._result

    @property
    def executed(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> ActionResult:
        self._require_executed()
        return self._result

    def emit(self, event: SubscriptionEvent) -> None:
        self._events.append(event)

    def _require_executed(self) -> None:
        if self._result is None:
            raise ActionNotExecutedError(
                f"{type(self).__name__} has not been executed yet"
            )

    async def _load_catalog(self, plan_id: str, pricing_id: int) -> tuple[Plan, PlanPricing]:
        plan = self.validator.validate_plan_availability(await self.plans.get(plan_id))
        pricing = self.validator.validate_pricing_availability(
            await self.plans.get_pricing(pricing_id), plan
        )
        return plan, pricing

    async def _ensure_can_reactivate(self, subscription: Subscription) -> None:
        """Transition check plus the one-active-per-subscriber re-check."""

        self.validator.validate_status_transition(subscription.status, SubscriptionStatus.ACTIVE)
        await self.subscriptions.lock_subscriber(subscription.subscriber)
        if await self.subscriptions.has_active(subscription.subscriber, exclude_id=subscription.id):
            raise BusinessRuleError.already_subscribed()

    def _envelope(self, subscription: Subscription) -> dict:
        return {
            "subscription_id": subscription.id,
            "subscriber_type": subscription.subscriber_type,
            "subscriber_id": subscription.subscriber_id,
            "occurred_at": self.now,
        }
