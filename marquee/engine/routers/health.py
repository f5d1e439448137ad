"""Health endpoints."""
from fastapi import APIRouter, Depends

from ..dependencies import get_runtime
from ..schemas import HealthStatus, SchedulerHealth
from ..state import EngineRuntime

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthStatus)
def get_health(runtime: EngineRuntime = Depends(get_runtime)) -> HealthStatus:
    """Return service heartbeat information."""

    scheduler = runtime.scheduler
    return HealthStatus(
        scheduler=SchedulerHealth(
            running=scheduler.running,
            jobs=len(scheduler.job_names),
            active=scheduler.active(),
        ),
        mdb_enabled=runtime.matcher is not None,
    )
