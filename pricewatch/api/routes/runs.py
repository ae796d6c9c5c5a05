"""Manual run trigger and run status endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from pricewatch.api.deps import get_store, get_task_runner
from pricewatch.config import settings
from pricewatch.db.store import CatalogStore
from pricewatch.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

competitors_router = APIRouter(prefix="/api/competitors", tags=["competitors"])
scheduler_router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


# Request/response models
class RunRequest(BaseModel):
    """Request model for triggering a competitor run."""
    competitor_id: Optional[int] = None
    only_new: bool = True
    batch_size: int = Field(default=0, ge=0)


class RunAcceptedResponse(BaseModel):
    """Response model for an accepted run."""
    run_id: int


class RunStatusResponse(BaseModel):
    """Response model for run status."""
    running: bool
    running_run_id: Optional[int] = None
    running_since: Optional[datetime] = None
    running_trigger: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_message: Optional[str] = None


class CancelResponse(BaseModel):
    """Response model for a cancellation request."""
    cancelled: bool


async def _start_run(
    runner: TaskRunner,
    store: CatalogStore,
    competitor_id: Optional[int],
    only_new: bool,
    batch_size: int,
) -> RunAcceptedResponse:
    if not await store.has_products():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No products loaded; import the catalog first",
        )

    run_id = await runner.start_background_run(
        trigger="Manual",
        competitor_id=competitor_id,
        only_new=only_new,
        batch_size=batch_size,
    )
    if run_id is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A run is already in progress",
        )

    logger.info(f"Manual run {run_id} accepted (competitor: {competitor_id or 'all'})")
    return RunAcceptedResponse(run_id=run_id)


@competitors_router.post(
    "/run",
    response_model=RunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_competitors(
    request: RunRequest,
    runner: TaskRunner = Depends(get_task_runner),
    store: CatalogStore = Depends(get_store),
):
    """Start a reconciliation run for one or all competitors."""
    return await _start_run(
        runner, store, request.competitor_id, request.only_new, request.batch_size
    )


@scheduler_router.post(
    "/run",
    response_model=RunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_now(
    runner: TaskRunner = Depends(get_task_runner),
    store: CatalogStore = Depends(get_store),
):
    """Start a run for all competitors with default options."""
    return await _start_run(
        runner, store, None, settings.run_only_new_default, settings.run_batch_size_default
    )


@scheduler_router.get("/status", response_model=RunStatusResponse)
async def run_status(runner: TaskRunner = Depends(get_task_runner)):
    """Current and last run."""
    return RunStatusResponse(**await runner.coordinator.get_status())


@scheduler_router.post("/cancel", response_model=CancelResponse)
async def cancel_run(runner: TaskRunner = Depends(get_task_runner)):
    """Request cancellation of the run executing in this process."""
    return CancelResponse(cancelled=runner.cancel_current_run())
