"""Run entrypoint shared by the scheduler and the manual trigger API."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from pricewatch.adapters.registry import AdapterRegistry
from pricewatch.ai.disambiguator import AIDisambiguator
from pricewatch.db.models import RunStatus
from pricewatch.db.store import SqlCatalogStore
from pricewatch.metrics import record_run_finished, record_run_refused
from pricewatch.worker.orchestrator import ReconciliationOrchestrator, RunCancelled, RunSummary
from pricewatch.worker.run_coordinator import RunCoordinator

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Final state of a run."""

    run_id: int
    status: str
    message: str
    summary: Optional[RunSummary] = None


class TaskRunner:
    """
    Admits runs through the coordinator and drives the orchestrator.

    Both triggers funnel through here: the scheduler awaits
    ``run_entrypoint``; the API calls ``start_background_run`` and returns as
    soon as the run is admitted.
    """

    def __init__(
        self,
        coordinator: Optional[RunCoordinator] = None,
        orchestrator: Optional[ReconciliationOrchestrator] = None,
    ):
        self._coordinator = coordinator
        self._orchestrator = orchestrator
        self._cancel_event: Optional[asyncio.Event] = None
        self._background: set[asyncio.Task] = set()

    @property
    def coordinator(self) -> RunCoordinator:
        if self._coordinator is None:
            self._coordinator = RunCoordinator()
        return self._coordinator

    @property
    def orchestrator(self) -> ReconciliationOrchestrator:
        if self._orchestrator is None:
            from pricewatch.db.session import AsyncSessionLocal

            store = SqlCatalogStore(AsyncSessionLocal)
            registry = AdapterRegistry(store, AIDisambiguator())
            self._orchestrator = ReconciliationOrchestrator(store, registry)
        return self._orchestrator

    @property
    def is_running(self) -> bool:
        return self._cancel_event is not None

    async def run_entrypoint(
        self,
        trigger: str = "Scheduled",
        competitor_id: Optional[int] = None,
        only_new: bool = True,
        batch_size: int = 0,
    ) -> Optional[RunOutcome]:
        """
        Admit and execute a run to completion.

        Returns:
            RunOutcome, or None when another run is already active
        """
        run = await self.coordinator.try_start_run(trigger)
        if run is None:
            logger.info(f"Run skipped ({trigger}): already running")
            record_run_refused(trigger)
            return None
        return await self._execute(run.id, trigger, competitor_id, only_new, batch_size)

    async def start_background_run(
        self,
        trigger: str = "Manual",
        competitor_id: Optional[int] = None,
        only_new: bool = True,
        batch_size: int = 0,
    ) -> Optional[int]:
        """
        Admit a run and execute it as a background task.

        Returns:
            The run id, or None when another run is already active
        """
        run = await self.coordinator.try_start_run(trigger)
        if run is None:
            record_run_refused(trigger)
            return None

        # Cancellable as soon as the run id is handed out
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        task = asyncio.create_task(
            self._execute(run.id, trigger, competitor_id, only_new, batch_size, cancel_event)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return run.id

    def cancel_current_run(self) -> bool:
        """Request cancellation of the run executing in this process."""
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        logger.info("Cancellation requested for current run")
        return True

    async def wait_background(self) -> None:
        """Wait for background runs (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _execute(
        self,
        run_id: int,
        trigger: str,
        competitor_id: Optional[int],
        only_new: bool,
        batch_size: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunOutcome:
        if cancel_event is None:
            cancel_event = asyncio.Event()
            self._cancel_event = cancel_event
        started = time.monotonic()
        status = RunStatus.FAILED.value
        message = "Run interrupted"
        summary: Optional[RunSummary] = None

        logger.info(
            f"Run {run_id} executing (trigger: {trigger}, competitor: {competitor_id or 'all'}, "
            f"only_new: {only_new}, batch_size: {batch_size})"
        )
        try:
            summary = await self.orchestrator.run_reconciliation(
                run_id,
                competitor_id=competitor_id,
                only_new=only_new,
                batch_size=batch_size,
                cancel_event=cancel_event,
            )
            status = RunStatus.SUCCESS.value
            message = summary.joined_message()
        except RunCancelled as e:
            summary = e.summary
            status = RunStatus.CANCELLED.value
            message = " | ".join(["Cancelled"] + summary.messages)
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}", exc_info=True)
            status = RunStatus.FAILED.value
            message = str(e) or type(e).__name__
        finally:
            if self._cancel_event is cancel_event:
                self._cancel_event = None
            await self.coordinator.complete_run(run_id, status, message)
            record_run_finished(trigger, status, time.monotonic() - started)

        return RunOutcome(run_id=run_id, status=status, message=message, summary=summary)


# Global task runner instance
task_runner = TaskRunner()
