from __future__ import annotations

import pytest

from conftest import RecordingEventSink
from subscription_engine.core.config import SchedulerSettings, Settings
from subscription_engine.scheduler import build_scheduler, run_sweep
from subscription_engine.services.sweepers import SweepResult


def test_scheduler_registers_one_job_per_sweep():
    app_settings = Settings(
        scheduler=SchedulerSettings(
            renew_cron="*/15 * * * *", usage_reset_crons={"daily": "5 0 * * *"}
        )
    )
    session_factory = object()

    scheduler = build_scheduler(
        session_factory, app_settings=app_settings, event_sink=RecordingEventSink()
    )

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"subscriptions.renew", "subscriptions.expire", "usage.reset.daily"}
    assert jobs["usage.reset.daily"].args[0].periods[0].value == "daily"
    assert jobs["subscriptions.renew"].max_instances == 1
    assert jobs["subscriptions.renew"].coalesce is True


@pytest.mark.asyncio
async def test_run_sweep_logs_crashes(caplog):
    class Exploding:
        name = "exploding"

        async def run(self):
            raise RuntimeError("database unavailable")

    await run_sweep(Exploding())

    assert "Scheduled exploding sweep crashed" in caplog.text


@pytest.mark.asyncio
async def test_run_sweep_warns_on_failures(caplog):
    class Failing:
        name = "expiry"

        async def run(self):
            return SweepResult(name="expiry", processed=1, failed=1)

    await run_sweep(Failing())

    assert "Scheduled expiry sweep had 1 failure(s)" in caplog.text
