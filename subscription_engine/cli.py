"""
CLI entry points for the batch sweeps and the scheduler.
"""

import asyncio
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

import click
from sqlalchemy.ext.asyncio import create_async_engine

from subscription_engine.core.config import Settings
from subscription_engine.core.logging import setup_logging
from subscription_engine.db.session import build_session_factory
from subscription_engine.domain.reset_period import FeatureResetPeriod
from subscription_engine.domain.time_windows import Clock, utcnow
from subscription_engine.services.event_sink import EventSink, build_event_sink
from subscription_engine.services.sweepers import (
    BaseSweeper,
    ExpirySweeper,
    RenewalSweeper,
    SweepResult,
    UsageResetSweeper,
)


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings: Settings
    clock: Clock
    event_sink_factory: Callable[[Settings], EventSink]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    from subscription_engine.core.config import settings

    return CLIDependencies(
        settings=settings,
        clock=utcnow,
        event_sink_factory=build_event_sink,
    )


def _run_sweeper(
    build: Callable[..., BaseSweeper], deps: CLIDependencies, **run_kwargs: Any
) -> SweepResult:
    async def _run() -> SweepResult:
        engine = create_async_engine(str(deps.settings.DATABASE_URI))
        try:
            sweeper = build(
                build_session_factory(engine),
                config=deps.settings.subscriptions,
                sweeper_config=deps.settings.sweepers,
                clock=deps.clock,
                event_sink=deps.event_sink_factory(deps.settings),
            )
            return await sweeper.run(**run_kwargs)
        finally:
            await engine.dispose()

    return asyncio.run(_run())


def _report(result: SweepResult) -> None:
    mode = " (dry run)" if result.dry_run else ""
    click.echo(f"{result.name} sweep{mode}")
    if result.dry_run:
        click.echo(f"  selected:  {len(result.selected)}")
        for record_id in result.selected:
            click.echo(f"    - {record_id}")
        return
    click.echo(f"  processed: {result.processed}")
    click.echo(f"  succeeded: {result.succeeded}")
    click.echo(f"  failed:    {result.failed}")
    click.echo(f"  skipped:   {result.skipped}")
    for error in result.errors:
        click.echo(f"  ! {error['id']}: {error['error']}: {error['message']}", err=True)


def _finish(result: SweepResult) -> None:
    _report(result)
    if result.exit_code:
        sys.exit(result.exit_code)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: Optional[str]) -> None:
    """Subscription engine maintenance commands."""
    setup_logging(log_level)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Only list the subscriptions that would renew")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum records to process")
@click.option(
    "--grace-period",
    "lookahead_hours",
    type=click.IntRange(min=0),
    default=None,
    help="Renew subscriptions ending within this many hours",
)
def renew(dry_run: bool, limit: Optional[int], lookahead_hours: Optional[int]) -> None:
    """Renew auto-renewing subscriptions that are about to end."""
    deps = _get_cli_dependencies()
    hours = (
        lookahead_hours
        if lookahead_hours is not None
        else deps.settings.sweepers.renewal_lookahead_hours
    )

    def build(factory, **kwargs) -> RenewalSweeper:
        return RenewalSweeper(factory, lookahead=timedelta(hours=hours), **kwargs)

    _finish(_run_sweeper(build, deps, dry_run=dry_run, limit=limit))


@cli.command()
@click.option("--dry-run", is_flag=True, help="Only list the subscriptions that would expire")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum records to process")
def expire(dry_run: bool, limit: Optional[int]) -> None:
    """Expire subscriptions past their grace period."""
    deps = _get_cli_dependencies()
    _finish(_run_sweeper(ExpirySweeper, deps, dry_run=dry_run, limit=limit))


@cli.command("reset-usage")
@click.option(
    "--period",
    type=click.Choice(["daily", "monthly", "yearly", "all"]),
    default="all",
    show_default=True,
)
@click.option("--dry-run", is_flag=True, help="Only list the counters that would reset")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum records to process")
def reset_usage(period: str, dry_run: bool, limit: Optional[int]) -> None:
    """Reset usage counters whose reset period has rolled over."""
    deps = _get_cli_dependencies()
    selected = None if period == "all" else FeatureResetPeriod(period)

    def build(factory, **kwargs) -> UsageResetSweeper:
        return UsageResetSweeper(factory, period=selected, **kwargs)

    _finish(_run_sweeper(build, deps, dry_run=dry_run, limit=limit))


@cli.command()
def schedule() -> None:
    """Run all sweeps on their configured cron schedules until interrupted."""
    from subscription_engine.db.session import dispose_engine
    from subscription_engine.scheduler import build_scheduler

    deps = _get_cli_dependencies()

    async def _serve() -> None:
        scheduler = build_scheduler(app_settings=deps.settings)
        scheduler.start()
        click.echo(f"Scheduler running {len(scheduler.get_jobs())} job(s); Ctrl+C to stop")
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown(wait=False)
            await dispose_engine()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")


if __name__ == "__main__":
    cli()
