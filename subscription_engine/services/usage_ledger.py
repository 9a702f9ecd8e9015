"""
Feature usage metering against plan limits.

Consumption is a single conditional ``UPDATE ... WHERE used + amount <=
limit`` so concurrent consumers of the same counter can never push it past
its limit. Counters whose reset period has rolled over are zeroed lazily on
the next consumption and eagerly by the usage reset sweeper.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.config import SubscriptionSettings
from subscription_engine.db.models.plan import PlanFeature
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.subscription_usage import SubscriptionUsage
from subscription_engine.domain.events import FeatureUsageReset
from subscription_engine.domain.time_windows import Clock, feature_valid_until, utcnow
from subscription_engine.repositories.plan_repo import PlanRepo
from subscription_engine.repositories.usage_repo import UsageRepo
from subscription_engine.services.validator import SubscriptionValidator

logger = logging.getLogger(__name__)


def numeric_limit(value: Any) -> Optional[int]:
    """Integer limit of a parsed feature value, ``None`` when not numeric."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


class UsageLedger:
    """Usage queries and mutations for one subscription at a time."""

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
        self.plans = PlanRepo(session)
        self.usages = UsageRepo(session)

    async def get_feature(self, subscription: Subscription, feature_key: str) -> Optional[PlanFeature]:
        return await self.plans.get_feature(subscription.plan_id, feature_key)

    async def has_feature(self, subscription: Subscription, feature_key: str) -> bool:
        return await self.get_feature(subscription, feature_key) is not None

    async def get_feature_value(self, subscription: Subscription, feature_key: str) -> Any:
        """Parsed feature value. ``None`` means unlimited or absent."""

        feature = await self.get_feature(subscription, feature_key)
        if feature is None:
            return None
        return feature.limit

    async def get_feature_usage(self, subscription: Subscription, feature_key: str) -> int:
        usage = await self.usages.get(subscription.id, feature_key)
        return usage.used if usage is not None else 0

    async def get_remaining_usage(self, subscription: Subscription, feature_key: str) -> Optional[int]:
        """Units left in the current period; ``None`` when unlimited or non-numeric.

        The counter row is created on demand.
        """

        feature = await self.get_feature(subscription, feature_key)
        if feature is None:
            return None
        limit = numeric_limit(feature.limit)
        if limit is None:
            return None
        usage = await self._get_or_create(subscription, feature)
        return max(0, limit - usage.used)

    async def is_feature_exhausted(self, subscription: Subscription, feature_key: str) -> bool:
        remaining = await self.get_remaining_usage(subscription, feature_key)
        if remaining is None:
            return False
        return remaining <= 0

    async def can_consume_feature(
        self, subscription: Subscription, feature_key: str, amount: int = 1
    ) -> bool:
        feature = await self.get_feature(subscription, feature_key)
        if feature is None or feature.limit is False:
            return False
        if not subscription.is_usable(self.clock()):
            return False
        limit = numeric_limit(feature.limit)
        if limit is None:
            return True
        used = await self.get_feature_usage(subscription, feature_key)
        return used + amount <= limit

    async def consume_feature(
        self, subscription: Subscription, feature_key: str, amount: int = 1
    ) -> bool:
        """Record ``amount`` units of usage. Returns whether it was recorded.

        Raises for malformed keys and non-positive amounts; every other
        refusal (missing feature, inactive subscription, limit reached) is a
        ``False`` return with no mutation.
        """

        self.validator.validate_feature_key(feature_key)
        self.validator.validate_consumption_amount(amount)

        now = self.clock()
        feature = await self.get_feature(subscription, feature_key)
        if feature is None or feature.limit is False:
            return False
        if not subscription.is_usable(now):
            return False

        usage = await self._get_or_create(subscription, feature)
        await self.reset_usage_if_expired(subscription, feature, usage=usage)

        incremented = await self.usages.try_increment(
            usage.id, amount, numeric_limit(feature.limit), now
        )
        await self.usages.refresh(usage)
        if not incremented:
            logger.debug(
                "Consumption of %s x%s refused for subscription %s (used=%s)",
                feature_key,
                amount,
                subscription.id,
                usage.used,
            )
        return incremented

    async def reset_usage(
        self, subscription: Subscription, feature_key: str
    ) -> Optional[FeatureUsageReset]:
        """Zero one counter. ``None`` when no usage was ever recorded."""

        usage = await self.usages.get(subscription.id, feature_key, for_update=True)
        if usage is None:
            return None
        now = self.clock()
        old_used = usage.used
        usage.used = 0
        usage.last_used_at = None
        usage.updated_at = now
        await self.usages.save(usage)
        logger.info(
            "Usage of %s reset for subscription %s (was %s)",
            feature_key,
            subscription.id,
            old_used,
        )
        return FeatureUsageReset(
            subscription_id=subscription.id,
            subscriber_type=subscription.subscriber_type,
            subscriber_id=subscription.subscriber_id,
            occurred_at=now,
            feature_key=feature_key,
            old_used=old_used,
        )

    async def reset_all_usages(self, subscription: Subscription) -> int:
        return await self.usages.reset_all(subscription.id, self.clock())

    async def reset_usage_if_expired(
        self,
        subscription: Subscription,
        feature: PlanFeature,
        *,
        usage: Optional[SubscriptionUsage] = None,
    ) -> Optional[FeatureUsageReset]:
        """Zero the counter when its last activity belongs to an earlier period."""

        if not feature.reset_period.is_automatic:
            return None
        if usage is None:
            usage = await self.usages.get(subscription.id, feature.key)
            if usage is None:
                return None
        now = self.clock()
        old_used = usage.used
        if not await self.usages.reset_if_stale(
            usage.id, feature.reset_period.period_start(now), now
        ):
            return None
        await self.usages.refresh(usage)
        return FeatureUsageReset(
            subscription_id=subscription.id,
            subscriber_type=subscription.subscriber_type,
            subscriber_id=subscription.subscriber_id,
            occurred_at=now,
            feature_key=feature.key,
            old_used=old_used,
        )

    async def usage_summary(
        self, subscription: Subscription, *, include_percentage: bool = False
    ) -> Dict[str, Dict[str, Any]]:
        summary: Dict[str, Dict[str, Any]] = {}
        features = await self.plans.list_features(subscription.plan_id)
        usages = {
            usage.key: usage for usage in await self.usages.list_for_subscription(subscription.id)
        }
        for feature in features:
            value = feature.limit
            limit = numeric_limit(value)
            used = usages[feature.key].used if feature.key in usages else 0
            remaining = max(0, limit - used) if limit is not None else None
            entry: Dict[str, Any] = {
                "limit": value,
                "used": used,
                "remaining": remaining,
                "exhausted": remaining is not None and remaining <= 0,
                "reset_period": feature.reset_period.value,
            }
            if include_percentage and limit:
                entry["percentage_used"] = round(used / limit * 100, 2)
            summary[feature.key] = entry
        return summary

    async def _get_or_create(
        self, subscription: Subscription, feature: PlanFeature
    ) -> SubscriptionUsage:
        now = self.clock()
        valid_until = feature_valid_until(feature.reset_period, subscription.starts_at or now)
        return await self.usages.get_or_create(subscription.id, feature.key, now, valid_until)
