"""APScheduler calendar trigger for the daily reconciliation run."""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from pricewatch.config import settings
from pricewatch.db.models import SchedulerSettings
from pricewatch.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)

DEFAULT_DAILY_TIME = "06:00"
ALL_DAYS_MASK = 127


def is_due(daily_time: str, days_of_week_mask: int, enabled: bool, now: datetime) -> bool:
    """
    Whether the calendar says a run should start at ``now``.

    The mask has bit 0 for Monday through bit 6 for Sunday; ``daily_time`` is
    HH:MM (UTC) and must equal the current minute.
    """
    if not enabled:
        return False
    if not days_of_week_mask & (1 << now.weekday()):
        return False
    return now.strftime("%H:%M") == (daily_time or DEFAULT_DAILY_TIME).strip()


async def load_schedule(session_factory=None) -> tuple[str, int, bool]:
    """(daily_time, days_of_week_mask, enabled); defaults when no row exists."""
    if session_factory is None:
        from pricewatch.db.session import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    async with session_factory() as session:
        row = (await session.execute(select(SchedulerSettings).limit(1))).scalar_one_or_none()

    if row is None:
        return DEFAULT_DAILY_TIME, ALL_DAYS_MASK, True
    return row.daily_time, row.days_of_week_mask, row.enabled


async def check_schedule(
    runner: Optional[TaskRunner] = None,
    session_factory=None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Start the scheduled run when it is due and has not run today.

    Returns:
        True if a run was executed
    """
    runner = runner or task_runner
    now = now or datetime.utcnow()

    daily_time, mask, enabled = await load_schedule(session_factory)
    if not is_due(daily_time, mask, enabled, now):
        return False

    if await runner.coordinator.scheduled_run_started_on(now.date()):
        logger.debug("Scheduled run already started today")
        return False

    logger.info(f"Starting scheduled run ({daily_time} UTC)")
    outcome = await runner.run_entrypoint(
        trigger="Scheduled",
        only_new=settings.run_only_new_default,
        batch_size=settings.run_batch_size_default,
    )
    return outcome is not None


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    A single interval job checks the calendar once per tick.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        check_schedule,
        IntervalTrigger(seconds=max(1, settings.scheduler_tick_seconds)),
        id="reconciliation_schedule",
        name="Check reconciliation calendar",
        max_instances=1,  # A run in progress keeps the tick busy
        coalesce=True,
        misfire_grace_time=30,
        replace_existing=True,
    )

    logger.info(f"Scheduler configured with calendar tick every {settings.scheduler_tick_seconds}s")
    return scheduler
