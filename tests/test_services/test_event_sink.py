from __future__ import annotations

import logging
from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import NOW, RecordingEventSink, reload
from subscription_engine.core.config import Settings
from subscription_engine.db.models import Subscription
from subscription_engine.domain.events import SubscriptionCanceled, SubscriptionEvent
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.services.event_sink import (
    CompositeEventSink,
    LoggingEventSink,
    RedisEventSink,
    build_event_sink,
    publish_all,
)
from subscription_engine.services.subscription_service import SubscriptionService


class FakePubSubClient:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.published.append((channel, message))
        return 1


def canceled_event() -> SubscriptionEvent:
    return SubscriptionCanceled(
        subscription_id=uuid4(),
        subscriber_type="user",
        subscriber_id="u-1",
        occurred_at=NOW,
    )


@pytest.mark.asyncio
async def test_logging_sink_writes_audit_line(caplog):
    event = canceled_event()

    with caplog.at_level(logging.INFO, logger="subscription_engine.audit"):
        await LoggingEventSink().publish(event)

    assert len(caplog.records) == 1
    assert caplog.records[0].getMessage().startswith("subscription.canceled {")
    assert str(event.subscription_id) in caplog.records[0].getMessage()


@pytest.mark.asyncio
async def test_redis_sink_publishes_json():
    client = FakePubSubClient()
    event = canceled_event()

    await RedisEventSink(client, "events").publish(event)

    channel, message = client.published[0]
    assert channel == "events"
    assert SubscriptionCanceled.model_validate_json(message) == event


@pytest.mark.asyncio
async def test_redis_sink_failure_is_logged_not_raised(caplog):
    with caplog.at_level(logging.ERROR, logger="subscription_engine.services.event_sink"):
        await RedisEventSink(FakePubSubClient(fail=True), "events").publish(canceled_event())

    assert "Failed to publish subscription.canceled" in caplog.text


@pytest.mark.asyncio
async def test_composite_sink_fans_out_in_order():
    first, second = RecordingEventSink(), RecordingEventSink()
    events = [canceled_event(), canceled_event()]

    await publish_all(CompositeEventSink([first, second]), events)

    assert first.events == events
    assert second.events == events


def test_build_event_sink_adds_redis_when_enabled():
    plain = build_event_sink(Settings(PUBLISH_EVENTS_TO_REDIS=False))
    assert [type(sink) for sink in plain.sinks] == [LoggingEventSink]

    with_redis = build_event_sink(
        Settings(PUBLISH_EVENTS_TO_REDIS=True, EVENTS_CHANNEL="billing")
    )
    assert [type(sink) for sink in with_redis.sinks] == [LoggingEventSink, RedisEventSink]
    assert with_redis.sinks[1].channel == "billing"


class DownSink:
    async def publish(self, event: SubscriptionEvent) -> None:
        raise RuntimeError("sink down")


@pytest.mark.asyncio
async def test_publish_all_logs_sink_failures_and_continues(caplog):
    recorder = RecordingEventSink()
    events = [canceled_event(), canceled_event()]

    with caplog.at_level(logging.ERROR, logger="subscription_engine.services.event_sink"):
        await publish_all(CompositeEventSink([DownSink(), recorder]), events)
        await publish_all(DownSink(), events)

    assert recorder.events == []
    assert caplog.text.count("Event sink failed on subscription.canceled") == 4


@pytest.mark.asyncio
async def test_service_change_survives_failing_sink(
    session_factory, catalog, subscriber, subscription_config, clock, caplog
):
    service = SubscriptionService(
        session_factory, config=subscription_config, clock=clock, event_sink=DownSink()
    )

    with caplog.at_level(logging.ERROR, logger="subscription_engine.services.event_sink"):
        subscription = await service.subscribe(subscriber, "basic", catalog.basic_monthly)

    stored = await reload(session_factory, Subscription, subscription.id)
    assert stored.status is SubscriptionStatus.ACTIVE
    assert "Event sink failed on subscription.created" in caplog.text
