"""Pydantic schemas for subscription and usage resources"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from subscription_engine.domain.status import SubscriptionStatus


class SubscribeBody(BaseModel):
    """Payload for creating a subscription."""

    plan_id: str = Field(..., description="Plan identifier")
    plan_pricing_id: int = Field(..., description="Pricing option of the plan")
    trial_days: Optional[int] = Field(
        default=None, ge=0, description="Trial length preceding the paid term"
    )
    auto_renewal: Optional[bool] = Field(
        default=None, description="Overrides the configured auto-renewal default"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TrialBody(BaseModel):
    """Payload for starting a trial."""

    plan_id: str = Field(..., description="Plan identifier")
    plan_pricing_id: int = Field(..., description="Pricing option of the plan")
    trial_days: Optional[int] = Field(
        default=None, ge=0, description="Defaults to the configured trial period"
    )


class DuplicateBody(BaseModel):
    start_date: Optional[datetime] = None
    with_trial: bool = False


class ChangePlanBody(BaseModel):
    plan_id: str = Field(..., description="Target plan identifier")
    plan_pricing_id: int = Field(..., description="Target pricing option")


class ConsumeBody(BaseModel):
    amount: int = Field(default=1, description="Units to consume")


class SubscriptionRead(BaseModel):
    """Schema returned when reading a subscription."""

    id: UUID
    subscriber_type: str
    subscriber_id: str
    plan_id: str
    plan_pricing_id: int
    status: SubscriptionStatus
    is_auto_renewal: bool
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = Field(
        default=None, description="Null for lifetime subscriptions"
    )
    grace_ends_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CurrentSubscription(BaseModel):
    subscribed: bool
    subscription: Optional[SubscriptionRead] = None


class FeatureUsageRead(BaseModel):
    subscription_id: UUID
    feature_key: str
    value: Any = Field(default=None, description="Parsed limit; null means unlimited")
    used: int
    remaining: Optional[int] = None
    unlimited: bool
    reset_period: str


class ConsumeResult(BaseModel):
    subscription_id: UUID
    feature_key: str
    consumed: int
    remaining: Optional[int] = None
    unlimited: bool


class SubscriptionHistory(BaseModel):
    items: List[SubscriptionRead]
