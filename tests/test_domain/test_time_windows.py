from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from subscription_engine.db.models.plan import parse_feature_value
from subscription_engine.domain import time_windows
from subscription_engine.domain.reset_period import FeatureResetPeriod
from subscription_engine.domain.subscriber import SubscriberRef

NOW = datetime(2025, 1, 31, 12, 30, tzinfo=timezone.utc)


def test_trial_then_paid_term_with_grace() -> None:
    window = time_windows.compute_window(NOW, duration_days=30, grace_days=3, trial_days=14)

    assert window.starts_at == NOW
    assert window.trial_ends_at == NOW + timedelta(days=14)
    assert window.ends_at == NOW + timedelta(days=44)
    assert window.grace_ends_at == NOW + timedelta(days=47)


def test_zero_duration_is_lifetime() -> None:
    window = time_windows.compute_window(NOW, duration_days=0, grace_days=3)

    assert window.is_lifetime
    assert window.ends_at is None
    assert window.grace_ends_at is None
    assert window.trial_ends_at is None


def test_extend_end_from_future_end() -> None:
    current_end = NOW + timedelta(days=5)
    assert time_windows.extend_end(current_end, 30, NOW) == current_end + timedelta(days=30)


def test_extend_end_from_now_when_already_ended() -> None:
    assert time_windows.extend_end(NOW - timedelta(days=2), 30, NOW) == NOW + timedelta(days=30)
    assert time_windows.extend_end(None, 30, NOW) == NOW + timedelta(days=30)


def test_extend_end_lifetime_pricing_stays_lifetime() -> None:
    assert time_windows.extend_end(NOW + timedelta(days=5), 0, NOW) is None


def test_grace_period_queries() -> None:
    ends_at = NOW - timedelta(days=1)
    grace_ends_at = NOW + timedelta(days=2)

    assert time_windows.is_in_grace_period(ends_at, grace_ends_at, NOW)
    assert time_windows.has_valid_period(ends_at, grace_ends_at, NOW)
    assert time_windows.days_remaining(ends_at, grace_ends_at, NOW) == 2
    assert not time_windows.has_valid_period(ends_at, None, NOW)
    assert time_windows.has_valid_period(None, None, NOW)
    assert time_windows.days_remaining(None, None, NOW) is None


def test_is_ending_soon() -> None:
    assert time_windows.is_ending_soon(NOW + timedelta(days=3), NOW)
    assert not time_windows.is_ending_soon(NOW + timedelta(days=10), NOW)
    assert not time_windows.is_ending_soon(None, NOW)


def test_feature_valid_until_uses_calendar_arithmetic() -> None:
    # Jan 31 + 1 month clamps to Feb 28.
    assert time_windows.feature_valid_until(FeatureResetPeriod.MONTHLY, NOW) == datetime(
        2025, 2, 28, 12, 30, tzinfo=timezone.utc
    )
    assert time_windows.feature_valid_until(FeatureResetPeriod.DAILY, NOW) == NOW + timedelta(days=1)
    assert time_windows.feature_valid_until(FeatureResetPeriod.YEARLY, NOW) == datetime(
        2026, 1, 31, 12, 30, tzinfo=timezone.utc
    )
    assert time_windows.feature_valid_until(FeatureResetPeriod.NEVER, NOW) is None


@pytest.mark.parametrize(
    "period,expected",
    [
        (FeatureResetPeriod.DAILY, datetime(2025, 1, 31, tzinfo=timezone.utc)),
        (FeatureResetPeriod.MONTHLY, datetime(2025, 1, 1, tzinfo=timezone.utc)),
        (FeatureResetPeriod.YEARLY, datetime(2025, 1, 1, tzinfo=timezone.utc)),
        (FeatureResetPeriod.NEVER, None),
    ],
)
def test_period_start(period: FeatureResetPeriod, expected) -> None:
    assert period.period_start(NOW) == expected


def test_next_reset_date() -> None:
    assert FeatureResetPeriod.DAILY.next_reset_date(NOW) == datetime(2025, 2, 1, tzinfo=timezone.utc)
    assert FeatureResetPeriod.MONTHLY.next_reset_date(NOW) == datetime(2025, 2, 1, tzinfo=timezone.utc)
    assert FeatureResetPeriod.NEVER.next_reset_date(NOW) is None


def test_should_reset_daily_boundary() -> None:
    now = datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc)
    yesterday_late = datetime(2025, 3, 14, 23, 0, tzinfo=timezone.utc)
    today_early = datetime(2025, 3, 15, 1, 0, tzinfo=timezone.utc)

    assert FeatureResetPeriod.DAILY.should_reset(yesterday_late, now)
    assert not FeatureResetPeriod.DAILY.should_reset(today_early, now)
    assert not FeatureResetPeriod.DAILY.should_reset(None, now)
    assert not FeatureResetPeriod.NEVER.should_reset(yesterday_late, now)


def test_only_automatic_periods_are_swept() -> None:
    assert FeatureResetPeriod.automatic_reset_periods() == (
        FeatureResetPeriod.DAILY,
        FeatureResetPeriod.MONTHLY,
        FeatureResetPeriod.YEARLY,
    )
    assert not FeatureResetPeriod.NEVER.is_automatic


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, None),
        ("unlimited", None),
        ("NULL", None),
        ("true", True),
        ("False", False),
        ("10", 10),
        ("2.5", 2.5),
        ('["a", "b"]', ["a", "b"]),
        ("gold", "gold"),
    ],
)
def test_parse_feature_value(raw, expected) -> None:
    assert parse_feature_value(raw) == expected


def test_subscriber_ref_requires_identity() -> None:
    ref = SubscriberRef(type="team", id="42")
    assert ref.key == "team:42"
    with pytest.raises(ValueError):
        SubscriberRef(type="", id="42")
