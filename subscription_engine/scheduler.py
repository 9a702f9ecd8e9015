"""
In-process scheduling of the batch sweeps.

Each sweep runs on its own cron trigger with ``max_instances=1`` so a slow
run is never overlapped by the next tick of the same job.
"""
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import Settings, settings
from subscription_engine.db.session import get_session_factory
from subscription_engine.domain.reset_period import FeatureResetPeriod
from subscription_engine.services.event_sink import EventSink, build_event_sink
from subscription_engine.services.sweepers import (
    BaseSweeper,
    ExpirySweeper,
    RenewalSweeper,
    UsageResetSweeper,
)

logger = logging.getLogger(__name__)


async def run_sweep(sweeper: BaseSweeper) -> None:
    """Scheduler job body. Errors are logged so the scheduler keeps running."""

    try:
        result = await sweeper.run()
    except Exception:
        logger.exception("Scheduled %s sweep crashed", sweeper.name)
        return
    if result.failed:
        logger.warning("Scheduled %s sweep had %d failure(s)", sweeper.name, result.failed)


def build_scheduler(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    app_settings: Settings = settings,
    event_sink: Optional[EventSink] = None,
) -> AsyncIOScheduler:
    factory = session_factory or get_session_factory()
    sink = event_sink or build_event_sink(app_settings)
    common = {
        "config": app_settings.subscriptions,
        "sweeper_config": app_settings.sweepers,
        "event_sink": sink,
    }
    schedule = app_settings.scheduler

    scheduler = AsyncIOScheduler(timezone="UTC")
    jobs = [
        ("subscriptions.renew", schedule.renew_cron, RenewalSweeper(factory, **common)),
        ("subscriptions.expire", schedule.expire_cron, ExpirySweeper(factory, **common)),
    ]
    for period_name, cron in schedule.usage_reset_crons.items():
        period = FeatureResetPeriod(period_name)
        jobs.append(
            (
                f"usage.reset.{period.value}",
                cron,
                UsageResetSweeper(factory, period=period, **common),
            )
        )

    for job_id, cron, sweeper in jobs:
        scheduler.add_job(
            run_sweep,
            trigger=CronTrigger.from_crontab(cron, timezone="UTC"),
            args=[sweeper],
            id=job_id,
            name=f"{sweeper.name} sweep ({cron})",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug("Scheduled %s with cron '%s'", job_id, cron)
    return scheduler
