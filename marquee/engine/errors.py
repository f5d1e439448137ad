"""Exception hierarchy shared by the catalog engine."""
from __future__ import annotations

from typing import Any


class MarqueeError(RuntimeError):
    """Base class for engine errors."""


class ConfigError(MarqueeError):
    """Raised at startup when configuration is missing or invalid."""


class FetchError(MarqueeError):
    """Raised when an outbound HTTP request cannot be completed."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        url: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status = status


class TransientExternalError(FetchError):
    """Upstream failure worth retrying (5xx, throttling, timeouts, transport)."""


class PermanentExternalError(FetchError):
    """Upstream rejected the request (4xx); retrying will not help."""


class JobCancelled(MarqueeError):
    """Raised at cancellation check points to unwind a job."""

    kind = "cancelled"

    def __init__(self, reason: str = "cancelled", *, result: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.result = result


class JobFailed(MarqueeError):
    """Raised by a job that finished its work but must be recorded as failed."""

    def __init__(self, message: str, *, result: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.result = result


class RepositoryError(MarqueeError):
    """Raised when the durable store rejects a read or write."""


class MatchRejection(MarqueeError):
    """Expected outcome when no MDB candidate is accepted."""

    def __init__(self, reason: str, searched_name: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.searched_name = searched_name


class UnknownProvider(MarqueeError):
    """Raised when a lifecycle event names a provider the registry does not know."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown provider: {provider_id}")
        self.provider_id = provider_id


class UnknownJob(MarqueeError):
    """Raised when a job name is not registered with the scheduler."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown job: {name}")
        self.name = name


class JobAlreadyRunning(MarqueeError):
    """Raised when a trigger would break the single-run rule for a job name."""

    def __init__(self, name: str, *, blocked_by: str | None = None) -> None:
        if blocked_by and blocked_by != name:
            message = f"Job {name} is blocked while {blocked_by} is running"
        else:
            message = f"Job {name} is already running"
        super().__init__(message)
        self.name = name
        self.blocked_by = blocked_by


class JobNotRunning(MarqueeError):
    """Raised when cancelling a job that has no active run."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Job {name} is not running")
        self.name = name
