"""Explicit reset of one feature counter."""
from __future__ import annotations

from subscription_engine.core.exceptions import FeatureNotAvailableError
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.services.actions.base import BaseAction
from subscription_engine.services.usage_ledger import UsageLedger


class ResetFeatureUsageAction(BaseAction):
    def __init__(self, session, subscription: Subscription, feature_key: str, **kwargs):
        super().__init__(session, **kwargs)
        self.subscription = subscription
        self.feature_key = feature_key
        self.ledger = UsageLedger(
            session, config=self.config, clock=self.clock, validator=self.validator
        )

    async def validate(self) -> None:
        self.validator.validate_feature_key(self.feature_key)

    async def execute(self) -> Subscription:
        event = await self.ledger.reset_usage(self.subscription, self.feature_key)
        if event is None:
            raise FeatureNotAvailableError(
                f"No usage recorded for feature '{self.feature_key}'",
                context={"feature_key": self.feature_key},
            )
        self.emit(event)
        return self.subscription
