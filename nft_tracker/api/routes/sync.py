"""Sync status and trigger API endpoints."""

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nft_tracker.api.deps import get_database, get_task_runner, require_admin_api_key
from nft_tracker.db.models import SyncRun
from nft_tracker.errors import (
    ConfigurationError,
    FeedError,
    ImmutableListingError,
    MalformedRecordError,
    RetryExhaustedError,
)
from nft_tracker.worker.tasks import JOB_LISTINGS, JOB_OWNERSHIP, SyncTaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRunResponse(BaseModel):
    """Response model for a sync run."""
    id: int
    run_id: str
    job_type: str
    trigger: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    summary: Optional[dict[str, Any]]
    error_count: int
    error_message: Optional[str]

    class Config:
        from_attributes = True


@router.get("/status")
async def sync_status(runner: SyncTaskRunner = Depends(get_task_runner)):
    """Current state of each sync job."""
    return {
        "sync_enabled": runner.settings.sync_enabled,
        "jobs": runner.status(),
    }


@router.get("/runs", response_model=List[SyncRunResponse])
async def list_sync_runs(
    job_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_database),
):
    """List sync runs, newest first."""
    query = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
    if job_type:
        query = query.where(SyncRun.job_type == job_type)
    result = await db.execute(query)
    return result.scalars().all()


def _trigger(runner: SyncTaskRunner, job_type: str, background_tasks: BackgroundTasks, job) -> dict:
    already_running = runner.guards[job_type].is_running
    if not already_running:
        background_tasks.add_task(job, trigger="manual")
    return {
        "message": f"{job_type} sync already running" if already_running else f"{job_type} sync triggered",
        "triggered": not already_running,
        "job_type": job_type,
    }


@router.post("/listings", status_code=202)
async def trigger_listing_sync(
    background_tasks: BackgroundTasks,
    runner: SyncTaskRunner = Depends(get_task_runner),
    _admin: None = Depends(require_admin_api_key),
):
    """Trigger a listing sync (admin only). Ignored while one is running."""
    return _trigger(runner, JOB_LISTINGS, background_tasks, runner.run_listing_sync)


@router.post("/ownership", status_code=202)
async def trigger_ownership_sync(
    background_tasks: BackgroundTasks,
    runner: SyncTaskRunner = Depends(get_task_runner),
    _admin: None = Depends(require_admin_api_key),
):
    """Trigger an ownership sync (admin only). Ignored while one is running."""
    return _trigger(runner, JOB_OWNERSHIP, background_tasks, runner.run_ownership_sync)


@router.post("/listings/{token_id}")
async def sync_token_listing(
    token_id: int,
    runner: SyncTaskRunner = Depends(get_task_runner),
    _admin: None = Depends(require_admin_api_key),
):
    """Reconcile one token's listing now (admin only). Refused while a full listing sync runs."""
    if runner.guards[JOB_LISTINGS].is_running:
        raise HTTPException(status_code=409, detail="Listing sync is running; try again later")

    try:
        outcome = await runner.sync_token_listing(token_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (FeedError, RetryExhaustedError, MalformedRecordError) as e:
        raise HTTPException(status_code=502, detail=f"Marketplace lookup failed: {e}")
    except (ImmutableListingError, IntegrityError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"token_id": token_id, "outcome": outcome}
