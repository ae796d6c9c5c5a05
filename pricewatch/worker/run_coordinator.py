"""Run admission: at most one reconciliation run may be Running at a time."""

import asyncio
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.db.models import RunStatus, SchedulerRun

logger = logging.getLogger(__name__)


class RunCoordinator:
    """
    Gatekeeper for the Run table.

    The partial unique index on ``status = 'Running'`` makes the insert in
    ``try_start_run`` an atomic check-and-set across processes; the local lock
    keeps callers in this process from racing each other to the database.

    A row left Running by a crashed process blocks new runs until an operator
    calls ``fail_running_runs``.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from pricewatch.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def try_start_run(self, trigger: str) -> Optional[SchedulerRun]:
        """
        Admit a new run.

        Args:
            trigger: "Manual" or "Scheduled"

        Returns:
            The new Running row, or None if another run is active
        """
        async with self._lock:
            async with self._session_factory() as session:
                running = await session.execute(
                    select(SchedulerRun.id).where(SchedulerRun.status == RunStatus.RUNNING.value)
                )
                active_id = running.scalar_one_or_none()
                if active_id is not None:
                    logger.info(f"Run refused ({trigger}): run {active_id} is still running")
                    return None

                run = SchedulerRun(
                    status=RunStatus.RUNNING.value,
                    trigger_type=trigger,
                    started_at=datetime.utcnow(),
                )
                session.add(run)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info(f"Run refused ({trigger}): another run was admitted concurrently")
                    return None

                logger.info(f"Run {run.id} started (trigger: {trigger})")
                return run

    async def complete_run(self, run_id: int, status: str, message: Optional[str]) -> bool:
        """
        Finish a run.

        Returns:
            False if the run is unknown or already finished
        """
        status = RunStatus(status).value
        async with self._session_factory() as session:
            run = await session.get(SchedulerRun, run_id)
            if run is None:
                logger.warning(f"Cannot complete run {run_id}: not found")
                return False
            if run.status != RunStatus.RUNNING.value:
                logger.warning(f"Run {run_id} already finished with status {run.status}")
                return False

            run.status = status
            run.message = message
            run.finished_at = datetime.utcnow()
            await session.commit()

        logger.info(f"Run {run_id} finished: {status} ({message})")
        return True

    async def get_status(self) -> dict[str, Any]:
        """Current and last run, for status displays."""
        async with self._session_factory() as session:
            running = (
                await session.execute(
                    select(SchedulerRun).where(SchedulerRun.status == RunStatus.RUNNING.value)
                )
            ).scalar_one_or_none()

            last = (
                await session.execute(
                    select(SchedulerRun)
                    .where(SchedulerRun.status != RunStatus.RUNNING.value)
                    .order_by(SchedulerRun.started_at.desc(), SchedulerRun.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

        return {
            "running": running is not None,
            "running_run_id": running.id if running else None,
            "running_since": running.started_at if running else None,
            "running_trigger": running.trigger_type if running else None,
            "last_run_at": last.started_at if last else None,
            "last_finished_at": last.finished_at if last else None,
            "last_status": last.status if last else None,
            "last_message": last.message if last else None,
        }

    async def scheduled_run_started_on(self, day: date) -> bool:
        """Whether a Scheduled run started on the given UTC day."""
        start = datetime.combine(day, time.min)
        async with self._session_factory() as session:
            result = await session.execute(
                select(SchedulerRun.id)
                .where(
                    SchedulerRun.trigger_type == "Scheduled",
                    SchedulerRun.started_at >= start,
                    SchedulerRun.started_at < start + timedelta(days=1),
                )
                .limit(1)
            )
            return result.first() is not None

    async def fail_running_runs(self, message: str = "Force-failed by operator") -> int:
        """
        Mark every Running row as Failed (operator recovery).

        Returns:
            Number of runs released
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(SchedulerRun)
                .where(SchedulerRun.status == RunStatus.RUNNING.value)
                .values(
                    status=RunStatus.FAILED.value,
                    message=message,
                    finished_at=datetime.utcnow(),
                )
            )
            await session.commit()

        count = result.rowcount or 0
        if count:
            logger.warning(f"Force-failed {count} running run(s): {message}")
        return count
