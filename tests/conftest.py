"""
Pytest configuration for the application
"""
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional, Type
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from subscription_engine.core.config import SubscriptionSettings, SweeperSettings, settings
from subscription_engine.db.base import Base
from subscription_engine.db.models import (
    Plan,
    PlanFeature,
    PlanPricing,
    Subscription,
    SubscriptionUsage,
)
from subscription_engine.db.session import build_session_factory
from subscription_engine.domain.events import SubscriptionEvent
from subscription_engine.domain.reset_period import FeatureResetPeriod
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.services.subscription_service import SubscriptionService


# Set test environment and override runtime settings to avoid external deps
os.environ["ENV"] = "test"
settings.ENV = "test"
settings.scheduler.enabled = False
settings.PUBLISH_EVENTS_TO_REDIS = False

NOW = datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingEventSink:
    """Collects published events in memory."""

    def __init__(self) -> None:
        self.events: List[SubscriptionEvent] = []

    async def publish(self, event: SubscriptionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_cls: Type[SubscriptionEvent]) -> List[SubscriptionEvent]:
        return [event for event in self.events if isinstance(event, event_cls)]

    def types(self) -> List[str]:
        return [event.event_type for event in self.events]


@dataclass
class Catalog:
    """Ids of the seeded plans and pricings."""

    pricings: Dict[str, int] = field(default_factory=dict)

    @property
    def basic_monthly(self) -> int:
        return self.pricings["basic_monthly"]

    @property
    def basic_lifetime(self) -> int:
        return self.pricings["basic_lifetime"]

    @property
    def basic_retired(self) -> int:
        return self.pricings["basic_retired"]

    @property
    def pro_monthly(self) -> int:
        return self.pricings["pro_monthly"]

    @property
    def legacy_monthly(self) -> int:
        return self.pricings["legacy_monthly"]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def subscription_config() -> SubscriptionSettings:
    return SubscriptionSettings()


@pytest.fixture
def sweeper_config() -> SweeperSettings:
    return SweeperSettings(record_timeout_seconds=10)


@pytest.fixture
def subscriber() -> SubscriberRef:
    return SubscriberRef(type="user", id=str(uuid4()))


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite database so concurrent sessions see each other's commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def service(session_factory, subscription_config, clock, events) -> SubscriptionService:
    return SubscriptionService(
        session_factory,
        config=subscription_config,
        clock=clock,
        event_sink=events,
    )


@pytest_asyncio.fixture
async def catalog(session_factory) -> Catalog:
    """
    Seed plans:

    * ``basic``: 30-day and lifetime pricings plus a retired pricing;
      ``api`` 10/day, ``ads`` 100/month, unlimited ``reports``, boolean
      ``export`` and disabled ``sso``.
    * ``pro``: pricier 30-day pricing; ``api`` 100/day, ``ads`` 1000/month.
    * ``legacy``: inactive plan.
    """
    async with session_factory() as session, session.begin():
        session.add_all(
            [
                Plan(id="basic", name="Basic"),
                Plan(id="pro", name="Pro"),
                Plan(id="legacy", name="Legacy", is_active=False),
            ]
        )
        await session.flush()
        pricings = {
            "basic_monthly": PlanPricing(
                plan_id="basic", label="Monthly", duration_in_days=30, price=Decimal("10.00")
            ),
            "basic_lifetime": PlanPricing(
                plan_id="basic", label="Lifetime", duration_in_days=0, price=Decimal("100.00")
            ),
            "basic_retired": PlanPricing(
                plan_id="basic",
                label="Old monthly",
                duration_in_days=30,
                price=Decimal("8.00"),
                is_active=False,
            ),
            "pro_monthly": PlanPricing(
                plan_id="pro", label="Monthly", duration_in_days=30, price=Decimal("30.00")
            ),
            "legacy_monthly": PlanPricing(
                plan_id="legacy", label="Monthly", duration_in_days=30, price=Decimal("5.00")
            ),
        }
        session.add_all(pricings.values())
        session.add_all(
            [
                PlanFeature(plan_id="basic", key="api", value="10", reset_period=FeatureResetPeriod.DAILY),
                PlanFeature(plan_id="basic", key="ads", value="100", reset_period=FeatureResetPeriod.MONTHLY),
                PlanFeature(plan_id="basic", key="reports", value="unlimited"),
                PlanFeature(plan_id="basic", key="export", value="true"),
                PlanFeature(plan_id="basic", key="sso", value="false"),
                PlanFeature(plan_id="pro", key="api", value="100", reset_period=FeatureResetPeriod.DAILY),
                PlanFeature(plan_id="pro", key="ads", value="1000", reset_period=FeatureResetPeriod.MONTHLY),
            ]
        )
        await session.flush()
        return Catalog(pricings={name: pricing.id for name, pricing in pricings.items()})


async def make_subscription(
    session_factory,
    subscriber: SubscriberRef,
    pricing_id: int,
    *,
    plan_id: str = "basic",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    starts_at: Optional[datetime] = None,
    ends_at: Optional[datetime] = None,
    grace_ends_at: Optional[datetime] = None,
    trial_ends_at: Optional[datetime] = None,
    is_auto_renewal: bool = True,
    deleted_at: Optional[datetime] = None,
) -> Subscription:
    """Insert a subscription row directly, bypassing lifecycle actions."""
    subscription = Subscription(
        id=uuid4(),
        subscriber_type=subscriber.type,
        subscriber_id=subscriber.id,
        plan_id=plan_id,
        plan_pricing_id=pricing_id,
        status=status,
        is_auto_renewal=is_auto_renewal,
        starts_at=starts_at or NOW - timedelta(days=20),
        ends_at=ends_at,
        grace_ends_at=grace_ends_at,
        trial_ends_at=trial_ends_at,
        deleted_at=deleted_at,
    )
    async with session_factory() as session, session.begin():
        session.add(subscription)
    return subscription


async def add_usage(
    session_factory,
    subscription_id: UUID,
    key: str,
    used: int,
    *,
    last_used_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
) -> SubscriptionUsage:
    stamp = updated_at or last_used_at or NOW
    usage = SubscriptionUsage(
        subscription_id=subscription_id,
        key=key,
        used=used,
        last_used_at=last_used_at,
        created_at=stamp,
        updated_at=stamp,
    )
    async with session_factory() as session, session.begin():
        session.add(usage)
    return usage


async def reload(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)
