"""Endpoints for the authenticated subscriber's subscriptions."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status

from subscription_engine.api.deps import get_subscription_service
from subscription_engine.auth.jwt import require_auth
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.schemas.subscription import (
    ChangePlanBody,
    CurrentSubscription,
    DuplicateBody,
    SubscribeBody,
    SubscriptionHistory,
    SubscriptionRead,
    TrialBody,
)
from subscription_engine.services.limits import check_rate_limit
from subscription_engine.services.subscription_service import SubscriptionService


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/current", response_model=CurrentSubscription)
async def current_subscription(
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    subscription = await service.current_subscription(subscriber)
    if subscription is None:
        return CurrentSubscription(subscribed=False)
    return CurrentSubscription(
        subscribed=True, subscription=SubscriptionRead.model_validate(subscription)
    )


@router.get("/history", response_model=SubscriptionHistory)
async def subscription_history(
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    items = await service.history(subscriber)
    return SubscriptionHistory(items=[SubscriptionRead.model_validate(item) for item in items])


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
async def subscribe(
    body: SubscribeBody,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.subscribe(
        subscriber,
        body.plan_id,
        body.plan_pricing_id,
        trial_days=body.trial_days,
        auto_renewal=body.auto_renewal,
        metadata=body.metadata,
    )


@router.post("/trial", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
async def start_trial(
    body: TrialBody,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.start_trial(
        subscriber, body.plan_id, body.plan_pricing_id, trial_days=body.trial_days
    )


@router.post("/change-plan", response_model=SubscriptionRead)
async def change_plan(
    body: ChangePlanBody,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.change_plan(subscriber, body.plan_id, body.plan_pricing_id)


@router.post("/current/cancel", response_model=SubscriptionRead)
async def cancel_current(
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.cancel_current(subscriber)


@router.post("/resume", response_model=SubscriptionRead)
async def resume_latest(
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.resume_latest(subscriber)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
async def cancel(
    subscription_id: UUID,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.cancel(subscription_id, subscriber=subscriber)


@router.post("/{subscription_id}/resume", response_model=SubscriptionRead)
async def resume(
    subscription_id: UUID,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.resume(subscription_id, subscriber=subscriber)


@router.post("/{subscription_id}/renew", response_model=SubscriptionRead)
async def renew(
    subscription_id: UUID,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.renew(subscription_id, subscriber=subscriber)


@router.post(
    "/{subscription_id}/duplicate",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
)
async def duplicate(
    subscription_id: UUID,
    body: DuplicateBody,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.duplicate(
        subscriber,
        subscription_id,
        start_date=body.start_date,
        with_trial=body.with_trial,
    )


@router.get("/{subscription_id}/validation")
async def validation_summary(
    subscription_id: UUID,
    subscriber: SubscriberRef = Depends(require_auth),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await check_rate_limit(subscriber)
    return await service.validation_summary(subscription_id, subscriber=subscriber)
