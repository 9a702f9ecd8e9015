"""Publishers for domain events produced by actions and sweepers."""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from subscription_engine.domain.events import SubscriptionEvent

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("subscription_engine.audit")


class EventSink(Protocol):
    async def publish(self, event: SubscriptionEvent) -> None:
        ...


class LoggingEventSink:
    """Writes every event as one audit log line."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or audit_logger

    async def publish(self, event: SubscriptionEvent) -> None:
        self.log.info("%s %s", event.event_type, event.model_dump_json())


class RedisEventSink:
    """Fire-and-forget JSON publication on a Redis pub/sub channel.

    Publication failures are logged and never propagate: the state change
    that produced the event is already committed.
    """

    def __init__(self, client: redis.Redis, channel: str) -> None:
        self.client = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, channel: str) -> "RedisEventSink":
        return cls(redis.from_url(url, decode_responses=True), channel)

    async def publish(self, event: SubscriptionEvent) -> None:
        try:
            await self.client.publish(self.channel, event.model_dump_json())
        except (RedisError, OSError):
            logger.exception(
                "Failed to publish %s for subscription %s",
                event.event_type,
                event.subscription_id,
            )


class CompositeEventSink:
    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self.sinks = list(sinks)

    async def publish(self, event: SubscriptionEvent) -> None:
        for sink in self.sinks:
            await sink.publish(event)


async def publish_all(sink: EventSink, events: Iterable[SubscriptionEvent]) -> None:
    """Publish after commit. A failing sink is logged and never propagates."""

    for event in events:
        try:
            await sink.publish(event)
        except Exception:
            logger.exception(
                "Event sink failed on %s for subscription %s",
                event.event_type,
                event.subscription_id,
            )


def build_event_sink(settings) -> EventSink:
    """Logging sink, plus Redis when ``PUBLISH_EVENTS_TO_REDIS`` is on."""

    sinks: list = [LoggingEventSink()]
    if settings.PUBLISH_EVENTS_TO_REDIS:
        sinks.append(RedisEventSink.from_url(str(settings.REDIS_URI), settings.EVENTS_CHANNEL))
    return CompositeEventSink(sinks)
