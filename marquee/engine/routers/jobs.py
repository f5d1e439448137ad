"""Job orchestration endpoints."""
from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..dependencies import get_job_history, get_job_log_store, get_scheduler
from ..errors import JobAlreadyRunning, JobNotRunning, UnknownJob
from ..schemas import (
    JobHistoryModel,
    JobLogModel,
    JobStatusModel,
    JobTriggerRequest,
    JobTriggerResponse,
)
from ..services.scheduler import JobScheduler
from ..stores.job_history_store import JobHistoryStore
from ..stores.job_log_store import JobLogStore

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=list[JobStatusModel])
async def list_jobs(scheduler: JobScheduler = Depends(get_scheduler)) -> list[JobStatusModel]:
    """Return every registered job with its cadence and current state."""

    return scheduler.list_status()


@router.get("/runs/{run_id}/logs", response_model=list[JobLogModel])
def list_run_logs(
    run_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    level: str | None = Query(default=None, pattern="^(debug|info|warning|error)$"),
    history: JobHistoryStore = Depends(get_job_history),
    log_store: JobLogStore = Depends(get_job_log_store),
) -> list[JobLogModel]:
    """Return log events recorded for a run."""

    if history.get(run_id) is None:
        raise HTTPException(status_code=404, detail="Job run not found")
    return log_store.list_for_run(run_id, limit=limit, min_level=level)


@router.get("/{name}", response_model=JobStatusModel)
async def get_job(name: str, scheduler: JobScheduler = Depends(get_scheduler)) -> JobStatusModel:
    try:
        return scheduler.status(name)
    except UnknownJob as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{name}/trigger", response_model=JobTriggerResponse, status_code=202)
async def trigger_job(
    name: str,
    request: JobTriggerRequest | None = Body(default=None),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> JobTriggerResponse:
    """Start a run now, optionally scoped to one provider."""

    provider_id = request.provider_id if request else None
    try:
        run_id = await scheduler.trigger_now(name, provider_id=provider_id)
    except UnknownJob as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return JobTriggerResponse(job_name=name, run_id=run_id)


@router.post("/{name}/cancel", response_model=JobStatusModel)
async def cancel_job(name: str, scheduler: JobScheduler = Depends(get_scheduler)) -> JobStatusModel:
    """Request cooperative cancellation of the active run."""

    try:
        scheduler.cancel(name)
    except UnknownJob as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobNotRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return scheduler.status(name)


@router.get("/{name}/history", response_model=list[JobHistoryModel])
async def job_history(
    name: str,
    limit: int = Query(default=20, ge=1, le=100),
    statuses: Annotated[
        list[str] | None,
        Query(
            alias="status",
            description="Filter to one or more run statuses. Repeat the parameter to include several.",
        ),
    ] = None,
    scheduler: JobScheduler = Depends(get_scheduler),
    history: JobHistoryStore = Depends(get_job_history),
) -> list[JobHistoryModel]:
    """Return recent runs of a job, newest first."""

    if name not in scheduler.job_names:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    return history.list(job_name=name, statuses=statuses, limit=limit)
