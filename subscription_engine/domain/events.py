"""Domain events returned by lifecycle actions and the usage ledger."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from subscription_engine.domain.time_windows import utcnow


class SubscriptionEvent(BaseModel):
    """Common envelope: which subscription and subscriber the event is about."""

    event_type: str
    subscription_id: Optional[UUID] = None
    subscriber_type: str
    subscriber_id: str
    occurred_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class SubscriptionCreated(SubscriptionEvent):
    event_type: Literal["subscription.created"] = "subscription.created"
    plan_id: str
    plan_pricing_id: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionStarted(SubscriptionEvent):
    event_type: Literal["subscription.started"] = "subscription.started"
    is_trial: bool = False
    resumed: bool = False


class TrialStarted(SubscriptionEvent):
    event_type: Literal["subscription.trial_started"] = "subscription.trial_started"
    trial_days: int
    trial_ends_at: Optional[datetime] = None


class SubscriptionRenewed(SubscriptionEvent):
    event_type: Literal["subscription.renewed"] = "subscription.renewed"
    is_auto_renewal: bool = False
    previous_ends_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


class SubscriptionRenewalFailed(SubscriptionEvent):
    event_type: Literal["subscription.renewal_failed"] = "subscription.renewal_failed"
    reason: str


class SubscriptionCanceled(SubscriptionEvent):
    event_type: Literal["subscription.canceled"] = "subscription.canceled"
    immediately: bool = False


class SubscriptionExpired(SubscriptionEvent):
    event_type: Literal["subscription.expired"] = "subscription.expired"
    was_in_grace_period: bool = False


class SubscriptionChanged(SubscriptionEvent):
    event_type: Literal["subscription.changed"] = "subscription.changed"
    previous_subscription_id: UUID
    old_plan_id: str
    new_plan_id: str
    change_type: Literal["upgrade", "downgrade", "lateral"]
    usage_reset: bool = False
    proration_amount: Optional[Decimal] = None


class FeatureUsed(SubscriptionEvent):
    event_type: Literal["feature.used"] = "feature.used"
    feature_key: str
    amount: int
    remaining: Optional[int] = None


class FeatureUsageReset(SubscriptionEvent):
    event_type: Literal["feature.usage_reset"] = "feature.usage_reset"
    feature_key: str
    old_used: int
    new_used: int = 0
