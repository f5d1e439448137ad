"""Service layer of the catalog engine."""

from .lifecycle import LifecycleResult, ProviderAction, ProviderChangeEvent, ProviderLifecycleManager
from .registry import ProviderRegistry
from .scheduler import Job, JobContext, JobScheduler

__all__ = [
    "Job",
    "JobContext",
    "JobScheduler",
    "LifecycleResult",
    "ProviderAction",
    "ProviderChangeEvent",
    "ProviderLifecycleManager",
    "ProviderRegistry",
]
