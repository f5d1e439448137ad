"""FastAPI dependencies for the engine's HTTP port."""
from fastapi import Depends, Request

from .services.lifecycle import ProviderLifecycleManager
from .services.registry import ProviderRegistry
from .services.scheduler import JobScheduler
from .state import EngineRuntime
from .stores.job_history_store import JobHistoryStore
from .stores.job_log_store import JobLogStore


def get_runtime(request: Request) -> EngineRuntime:
    """Resolve the engine runtime from the FastAPI request."""
    return request.app.state.runtime


def get_scheduler(runtime: EngineRuntime = Depends(get_runtime)) -> JobScheduler:
    return runtime.scheduler


def get_job_history(runtime: EngineRuntime = Depends(get_runtime)) -> JobHistoryStore:
    return runtime.job_history


def get_job_log_store(runtime: EngineRuntime = Depends(get_runtime)) -> JobLogStore:
    return runtime.job_logs


def get_registry(runtime: EngineRuntime = Depends(get_runtime)) -> ProviderRegistry:
    return runtime.registry


def get_lifecycle(runtime: EngineRuntime = Depends(get_runtime)) -> ProviderLifecycleManager:
    """Return the provider lifecycle manager dependency."""
    return runtime.lifecycle
