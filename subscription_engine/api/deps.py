"""Shared FastAPI dependencies."""
from __future__ import annotations

from fastapi import Request

from subscription_engine.core.config import settings
from subscription_engine.db.session import get_session_factory
from subscription_engine.services.event_sink import build_event_sink
from subscription_engine.services.subscription_service import SubscriptionService


def build_subscription_service() -> SubscriptionService:
    return SubscriptionService(
        get_session_factory(),
        config=settings.subscriptions,
        event_sink=build_event_sink(settings),
    )


def get_subscription_service(request: Request) -> SubscriptionService:
    """The service stored on the app at startup (tests may replace it)."""

    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        service = build_subscription_service()
        request.app.state.subscription_service = service
    return service
