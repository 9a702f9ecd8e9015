"""
Scheduled batch sweeps: auto-renewal, expiry and periodic usage reset.

A sweep selects candidate ids in one short read, then processes each record
in its own transaction. The record is re-loaded under ``FOR UPDATE SKIP
LOCKED`` and re-checked, so records taken by a concurrent worker or no longer
eligible are counted as skipped. One record failing never stops the batch.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import SubscriptionSettings, SweeperSettings
from subscription_engine.core.exceptions import SubscriptionEngineError
from subscription_engine.domain.events import FeatureUsageReset, SubscriptionEvent
from subscription_engine.domain.reset_period import FeatureResetPeriod
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.time_windows import Clock, utcnow
from subscription_engine.repositories.subscription_repo import SubscriptionRepo
from subscription_engine.repositories.usage_repo import UsageRepo
from subscription_engine.services.actions import (
    ExpireSubscriptionAction,
    RenewSubscriptionAction,
)
from subscription_engine.services.event_sink import EventSink, LoggingEventSink, publish_all

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome counters of one sweep run."""

    name: str
    dry_run: bool = False
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    selected: List[Any] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def record_error(self, record_id: Any, exc: BaseException) -> None:
        self.failed += 1
        self.errors.append(
            {
                "id": str(record_id),
                "error": type(exc).__name__,
                "message": getattr(exc, "message", None) or str(exc),
            }
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "dry_run": self.dry_run,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class BaseSweeper:
    """Select-then-process loop shared by all sweeps."""

    name = "sweep"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: SubscriptionSettings,
        sweeper_config: SweeperSettings,
        clock: Clock = utcnow,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.sweeper_config = sweeper_config
        self.clock = clock
        self.event_sink = event_sink or LoggingEventSink()

    def _action_kwargs(self) -> Dict[str, Any]:
        return {"config": self.config, "clock": self.clock}

    async def select(
        self, session: AsyncSession, now: datetime, limit: Optional[int]
    ) -> Sequence[Hashable]:
        raise NotImplementedError

    async def process(
        self, session: AsyncSession, record_id: Any, now: datetime
    ) -> Optional[List[SubscriptionEvent]]:
        """Handle one record. ``None`` means it was skipped."""

        raise NotImplementedError

    async def run(self, *, dry_run: bool = False, limit: Optional[int] = None) -> SweepResult:
        now = self.clock()
        limit = limit or self.sweeper_config.batch_limit
        result = SweepResult(name=self.name, dry_run=dry_run)

        async with self.session_factory() as session:
            record_ids = list(await self.select(session, now, limit))

        logger.info("%s: %d candidate(s) selected", self.name, len(record_ids))
        if dry_run:
            result.selected = record_ids
            return result

        for record_id in record_ids:
            result.processed += 1
            try:
                events = await asyncio.wait_for(
                    self._process_in_transaction(record_id, now),
                    timeout=self.sweeper_config.record_timeout_seconds,
                )
            except SubscriptionEngineError as exc:
                logger.warning("%s: record %s failed: %s", self.name, record_id, exc.message)
                result.record_error(record_id, exc)
                await publish_all(self.event_sink, exc.events)
                continue
            except Exception as exc:
                logger.exception("%s: record %s failed", self.name, record_id)
                result.record_error(record_id, exc)
                continue

            if events is None:
                result.skipped += 1
            else:
                result.succeeded += 1
                await publish_all(self.event_sink, events)
            if self.sweeper_config.log_progress:
                logger.info(
                    "%s: %d/%d processed", self.name, result.processed, len(record_ids)
                )

        if self.sweeper_config.log_results:
            logger.info(
                "%s finished: processed=%d succeeded=%d failed=%d skipped=%d",
                self.name,
                result.processed,
                result.succeeded,
                result.failed,
                result.skipped,
            )
        return result

    async def _process_in_transaction(
        self, record_id: Any, now: datetime
    ) -> Optional[List[SubscriptionEvent]]:
        async with self.session_factory() as session, session.begin():
            return await self.process(session, record_id, now)


class RenewalSweeper(BaseSweeper):
    """Renews auto-renewing active subscriptions about to end."""

    name = "renewal"

    def __init__(self, *args, lookahead: Optional[timedelta] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.lookahead = lookahead or timedelta(
            hours=self.sweeper_config.renewal_lookahead_hours
        )

    async def select(self, session, now, limit):
        return await SubscriptionRepo(session).renewal_candidate_ids(now, self.lookahead, limit)

    async def process(self, session, record_id, now):
        subscription = await SubscriptionRepo(session).get_for_update(record_id, skip_locked=True)
        if (
            subscription is None
            or not subscription.is_auto_renewal
            or subscription.status is not SubscriptionStatus.ACTIVE
            or subscription.ends_at is None
            or not now < subscription.ends_at <= now + self.lookahead
        ):
            return None
        action = RenewSubscriptionAction.for_auto_renewal(
            session, subscription, **self._action_kwargs()
        )
        return (await action.handle()).events


class ExpirySweeper(BaseSweeper):
    """Expires active-status subscriptions past their grace (or end) date."""

    name = "expiry"

    async def select(self, session, now, limit):
        return await SubscriptionRepo(session).expiry_candidate_ids(now, limit)

    async def process(self, session, record_id, now):
        subscription = await SubscriptionRepo(session).get_for_update(record_id, skip_locked=True)
        if subscription is None or not subscription.status.is_active:
            return None
        deadline = subscription.grace_ends_at or subscription.ends_at
        if deadline is None or deadline > now:
            return None
        action = ExpireSubscriptionAction(session, subscription, **self._action_kwargs())
        return (await action.handle()).events


class UsageResetSweeper(BaseSweeper):
    """Zeroes counters whose reset period rolled over since their last activity.

    ``period=None`` sweeps every automatic period; the cap applies to the
    whole run.
    """

    name = "usage-reset"

    def __init__(self, *args, period: Optional[FeatureResetPeriod] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        if period is not None and not period.is_automatic:
            raise ValueError("Reset period 'never' cannot be swept")
        self.periods = (period,) if period else FeatureResetPeriod.automatic_reset_periods()

    async def select(self, session, now, limit) -> List[Tuple[int, FeatureResetPeriod]]:
        repo = UsageRepo(session)
        selected: List[Tuple[int, FeatureResetPeriod]] = []
        for period in self.periods:
            remaining = None
            if limit:
                remaining = limit - len(selected)
                if remaining <= 0:
                    break
            ids = await repo.reset_candidate_ids(period, period.period_start(now), remaining)
            selected.extend((usage_id, period) for usage_id in ids)
        return selected

    async def process(self, session, record_id, now):
        usage_id, period = record_id
        usages = UsageRepo(session)
        usage = await usages.get_by_id_for_update(usage_id, skip_locked=True)
        if usage is None or usage.used <= 0:
            return None
        subscription = await SubscriptionRepo(session).get(usage.subscription_id)
        if subscription is None or not subscription.status.is_active:
            return None
        old_used = usage.used
        if not await usages.reset_if_stale(usage.id, period.period_start(now), now):
            return None
        return [
            FeatureUsageReset(
                subscription_id=subscription.id,
                subscriber_type=subscription.subscriber_type,
                subscriber_id=subscription.subscriber_id,
                occurred_at=now,
                feature_key=usage.key,
                old_used=old_used,
            )
        ]
