"""Endpoints exposing feature usage and consumption."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Header

from subscription_engine.api.deps import get_subscription_service
from subscription_engine.auth.jwt import require_auth
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.schemas.subscription import (
    ConsumeBody,
    ConsumeResult,
    FeatureUsageRead,
)
from subscription_engine.services.limits import check_rate_limit, ensure_idempotent
from subscription_engine.services.subscription_service import SubscriptionService


router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("")
async def usage_summary(
    include_percentage: bool = False,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.usage_summary(subscriber, include_percentage=include_percentage)


@router.get("/{feature_key}", response_model=FeatureUsageRead)
async def feature_usage(
    feature_key: str,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.feature_usage(subscriber, feature_key)


@router.post("/{feature_key}/consume", response_model=ConsumeResult)
async def consume(
    feature_key: str,
    body: ConsumeBody,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    await ensure_idempotent(subscriber, idempotency_key)

    action = await service.consume(subscriber, feature_key, body.amount)
    return ConsumeResult(
        subscription_id=action.result.subscription.id,
        feature_key=feature_key,
        consumed=body.amount,
        remaining=action.remaining_usage,
        unlimited=action.is_unlimited,
    )
