from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from conftest import NOW, add_usage, make_subscription, reload
from subscription_engine.db.models import Subscription, SubscriptionUsage
from subscription_engine.domain.events import (
    FeatureUsageReset,
    SubscriptionExpired,
    SubscriptionRenewalFailed,
    SubscriptionRenewed,
)
from subscription_engine.domain.reset_period import FeatureResetPeriod
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.services.sweepers import (
    ExpirySweeper,
    RenewalSweeper,
    SweepResult,
    UsageResetSweeper,
)

YESTERDAY_LATE = datetime(2025, 3, 14, 23, 0, tzinfo=timezone.utc)
TODAY_EARLY = datetime(2025, 3, 15, 1, 0, tzinfo=timezone.utc)


def someone() -> SubscriberRef:
    return SubscriberRef(type="user", id=str(uuid4()))


@pytest.fixture
def sweeper_kwargs(subscription_config, sweeper_config, clock, events):
    return {
        "config": subscription_config,
        "sweeper_config": sweeper_config,
        "clock": clock,
        "event_sink": events,
    }


def test_sweep_result_exit_code_and_errors():
    result = SweepResult(name="renewal", processed=2, succeeded=1)
    assert result.exit_code == 0

    result.record_error("abc", RuntimeError("boom"))

    assert result.exit_code == 1
    assert result.as_dict() == {
        "name": "renewal",
        "dry_run": False,
        "processed": 2,
        "succeeded": 1,
        "failed": 1,
        "skipped": 0,
        "errors": [{"id": "abc", "error": "RuntimeError", "message": "boom"}],
    }


# -- renewal -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_renewal_selects_only_auto_renewing_inside_lookahead(
    session_factory, catalog, sweeper_kwargs, events
):
    due = await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(hours=10)
    )
    await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(hours=48)
    )
    await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW + timedelta(hours=10),
        is_auto_renewal=False,
    )
    await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        status=SubscriptionStatus.CANCELED,
        ends_at=NOW + timedelta(hours=10),
    )
    await make_subscription(session_factory, someone(), catalog.basic_lifetime)

    sweeper = RenewalSweeper(session_factory, **sweeper_kwargs)

    preview = await sweeper.run(dry_run=True)
    assert preview.selected == [due.id]
    assert preview.processed == 0
    assert events.events == []

    result = await sweeper.run()

    assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
    stored = await reload(session_factory, Subscription, due.id)
    assert stored.ends_at == NOW + timedelta(hours=10, days=30)
    assert stored.grace_ends_at == NOW + timedelta(hours=10, days=33)
    renewed = events.of_type(SubscriptionRenewed)
    assert [event.subscription_id for event in renewed] == [due.id]
    assert renewed[0].is_auto_renewal is True

    again = await sweeper.run()
    assert again.processed == 0


@pytest.mark.asyncio
async def test_renewal_lookahead_can_be_widened(session_factory, catalog, sweeper_kwargs):
    later = await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(hours=48)
    )

    sweeper = RenewalSweeper(session_factory, lookahead=timedelta(hours=72), **sweeper_kwargs)
    preview = await sweeper.run(dry_run=True)

    assert preview.selected == [later.id]


@pytest.mark.asyncio
async def test_renewal_failure_is_counted_and_reported(
    session_factory, catalog, sweeper_kwargs, events
):
    retired = await make_subscription(
        session_factory, someone(), catalog.basic_retired, ends_at=NOW + timedelta(hours=2)
    )
    healthy = await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(hours=3)
    )

    result = await RenewalSweeper(session_factory, **sweeper_kwargs).run()

    assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
    assert result.exit_code == 1
    assert result.errors[0]["id"] == str(retired.id)
    assert result.errors[0]["error"] == "BusinessRuleError"
    assert [event.subscription_id for event in events.of_type(SubscriptionRenewalFailed)] == [
        retired.id
    ]
    assert (await reload(session_factory, Subscription, retired.id)).ends_at == NOW + timedelta(
        hours=2
    )
    assert (await reload(session_factory, Subscription, healthy.id)).ends_at == NOW + timedelta(
        hours=3, days=30
    )


# -- expiry ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expiry_uses_grace_end_and_is_idempotent(
    session_factory, catalog, sweeper_kwargs, events
):
    past_grace = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW - timedelta(days=4),
        grace_ends_at=NOW - timedelta(days=1),
    )
    in_grace = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW - timedelta(days=1),
        grace_ends_at=NOW + timedelta(days=2),
    )
    trial_without_grace = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        status=SubscriptionStatus.TRIAL,
        trial_ends_at=NOW - timedelta(days=2),
        ends_at=NOW - timedelta(hours=1),
    )
    lifetime = await make_subscription(session_factory, someone(), catalog.basic_lifetime)

    sweeper = ExpirySweeper(session_factory, **sweeper_kwargs)
    result = await sweeper.run()

    assert (result.processed, result.succeeded, result.failed) == (2, 2, 0)
    assert {event.subscription_id for event in events.of_type(SubscriptionExpired)} == {
        past_grace.id,
        trial_without_grace.id,
    }
    for subscription_id, expected in (
        (past_grace.id, SubscriptionStatus.EXPIRED),
        (trial_without_grace.id, SubscriptionStatus.EXPIRED),
        (in_grace.id, SubscriptionStatus.ACTIVE),
        (lifetime.id, SubscriptionStatus.ACTIVE),
    ):
        assert (await reload(session_factory, Subscription, subscription_id)).status is expected

    again = await sweeper.run()
    assert again.processed == 0
    assert len(events.of_type(SubscriptionExpired)) == 2


@pytest.mark.asyncio
async def test_expiry_respects_limit(session_factory, catalog, sweeper_kwargs):
    for days in (3, 2):
        await make_subscription(
            session_factory,
            someone(),
            catalog.basic_monthly,
            ends_at=NOW - timedelta(days=days + 3),
            grace_ends_at=NOW - timedelta(days=days),
        )

    first = await ExpirySweeper(session_factory, **sweeper_kwargs).run(limit=1)
    second = await ExpirySweeper(session_factory, **sweeper_kwargs).run(limit=1)
    third = await ExpirySweeper(session_factory, **sweeper_kwargs).run(limit=1)

    assert [first.succeeded, second.succeeded, third.processed] == [1, 1, 0]


@pytest.mark.asyncio
async def test_record_no_longer_eligible_is_skipped(session_factory, catalog, sweeper_kwargs):
    in_grace = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW - timedelta(days=1),
        grace_ends_at=NOW + timedelta(days=2),
    )

    class StaleSelection(ExpirySweeper):
        async def select(self, session, now, limit):
            return [in_grace.id, uuid4()]

    result = await StaleSelection(session_factory, **sweeper_kwargs).run()

    assert (result.processed, result.succeeded, result.skipped, result.failed) == (2, 0, 2, 0)


@pytest.mark.asyncio
async def test_unexpected_error_does_not_stop_the_batch(
    session_factory, catalog, sweeper_kwargs
):
    broken = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW - timedelta(days=5),
        grace_ends_at=NOW - timedelta(days=2),
    )
    fine = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW - timedelta(days=4),
        grace_ends_at=NOW - timedelta(days=1),
    )

    class Flaky(ExpirySweeper):
        async def process(self, session, record_id, now):
            if record_id == broken.id:
                raise RuntimeError("connection reset")
            return await super().process(session, record_id, now)

    result = await Flaky(session_factory, **sweeper_kwargs).run()

    assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
    assert result.errors == [
        {"id": str(broken.id), "error": "RuntimeError", "message": "connection reset"}
    ]
    assert (await reload(session_factory, Subscription, fine.id)).status is SubscriptionStatus.EXPIRED


@pytest.mark.asyncio
async def test_record_timeout_fails_only_that_record(
    session_factory, catalog, sweeper_kwargs, sweeper_config
):
    slow = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW - timedelta(days=5),
        grace_ends_at=NOW - timedelta(days=2),
    )
    fine = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        ends_at=NOW - timedelta(days=4),
        grace_ends_at=NOW - timedelta(days=1),
    )

    class Stuck(ExpirySweeper):
        async def select(self, session, now, limit):
            return [slow.id, fine.id]

        async def process(self, session, record_id, now):
            if record_id == slow.id:
                await asyncio.sleep(5)
            return await super().process(session, record_id, now)

    sweeper_kwargs["sweeper_config"] = sweeper_config.model_copy(
        update={"record_timeout_seconds": 0.05}
    )
    result = await Stuck(session_factory, **sweeper_kwargs).run()

    assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
    assert result.errors[0]["id"] == str(slow.id)
    assert result.errors[0]["error"] == "TimeoutError"
    assert (await reload(session_factory, Subscription, slow.id)).status is SubscriptionStatus.ACTIVE
    assert (await reload(session_factory, Subscription, fine.id)).status is SubscriptionStatus.EXPIRED


@pytest.mark.asyncio
async def test_failing_event_sink_does_not_abort_the_batch(
    session_factory, catalog, sweeper_kwargs, caplog
):
    due = [
        await make_subscription(
            session_factory,
            someone(),
            catalog.basic_monthly,
            ends_at=NOW - timedelta(days=4 + offset),
            grace_ends_at=NOW - timedelta(days=1 + offset),
        )
        for offset in range(3)
    ]

    class DownSink:
        async def publish(self, event):
            raise RuntimeError("sink down")

    sweeper_kwargs["event_sink"] = DownSink()
    result = await ExpirySweeper(session_factory, **sweeper_kwargs).run()

    assert (result.processed, result.succeeded, result.failed) == (3, 3, 0)
    for subscription in due:
        stored = await reload(session_factory, Subscription, subscription.id)
        assert stored.status is SubscriptionStatus.EXPIRED
    assert "Event sink failed on subscription.expired" in caplog.text


# -- usage reset -------------------------------------------------------------


@pytest.mark.asyncio
async def test_daily_reset_only_touches_previous_day_activity(
    session_factory, catalog, sweeper_kwargs, events
):
    subscription = await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(days=10)
    )
    stale = await add_usage(session_factory, subscription.id, "api", 5, last_used_at=YESTERDAY_LATE)
    monthly = await add_usage(session_factory, subscription.id, "ads", 9, last_used_at=YESTERDAY_LATE)
    other = await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(days=10)
    )
    fresh = await add_usage(session_factory, other.id, "api", 3, last_used_at=TODAY_EARLY)

    sweeper = UsageResetSweeper(session_factory, period=FeatureResetPeriod.DAILY, **sweeper_kwargs)

    preview = await sweeper.run(dry_run=True)
    assert preview.selected == [(stale.id, FeatureResetPeriod.DAILY)]

    result = await sweeper.run()

    assert (result.processed, result.succeeded) == (1, 1)
    assert (await reload(session_factory, SubscriptionUsage, stale.id)).used == 0
    assert (await reload(session_factory, SubscriptionUsage, monthly.id)).used == 9
    assert (await reload(session_factory, SubscriptionUsage, fresh.id)).used == 3
    reset = events.of_type(FeatureUsageReset)
    assert [(event.feature_key, event.old_used) for event in reset] == [("api", 5)]

    again = await sweeper.run()
    assert again.processed == 0


@pytest.mark.asyncio
async def test_reset_without_last_use_falls_back_to_update_time(
    session_factory, catalog, sweeper_kwargs
):
    subscription = await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(days=10)
    )
    usage = await add_usage(
        session_factory,
        subscription.id,
        "ads",
        4,
        updated_at=datetime(2025, 2, 20, tzinfo=timezone.utc),
    )

    result = await UsageResetSweeper(session_factory, **sweeper_kwargs).run()

    assert result.succeeded == 1
    assert (await reload(session_factory, SubscriptionUsage, usage.id)).used == 0


@pytest.mark.asyncio
async def test_reset_ignores_inactive_subscriptions(session_factory, catalog, sweeper_kwargs):
    expired = await make_subscription(
        session_factory,
        someone(),
        catalog.basic_monthly,
        status=SubscriptionStatus.EXPIRED,
        ends_at=NOW - timedelta(days=3),
    )
    await add_usage(session_factory, expired.id, "api", 5, last_used_at=YESTERDAY_LATE)

    result = await UsageResetSweeper(session_factory, **sweeper_kwargs).run(dry_run=True)

    assert result.selected == []


@pytest.mark.asyncio
async def test_reset_limit_caps_the_whole_run(session_factory, catalog, sweeper_kwargs):
    subscription = await make_subscription(
        session_factory, someone(), catalog.basic_monthly, ends_at=NOW + timedelta(days=10)
    )
    await add_usage(session_factory, subscription.id, "api", 5, last_used_at=YESTERDAY_LATE)
    await add_usage(
        session_factory,
        subscription.id,
        "ads",
        9,
        last_used_at=datetime(2025, 2, 20, tzinfo=timezone.utc),
    )

    sweeper = UsageResetSweeper(session_factory, **sweeper_kwargs)

    assert len((await sweeper.run(dry_run=True)).selected) == 2
    assert len((await sweeper.run(dry_run=True, limit=1)).selected) == 1


def test_reset_period_never_cannot_be_swept(sweeper_kwargs):
    with pytest.raises(ValueError):
        UsageResetSweeper(None, period=FeatureResetPeriod.NEVER, **sweeper_kwargs)
