"""Named jobs with cron cadences, single-run enforcement and persisted history."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from croniter import croniter

from ..errors import (
    ConfigError,
    JobAlreadyRunning,
    JobCancelled,
    JobFailed,
    JobNotRunning,
    RepositoryError,
    UnknownJob,
)
from ..schemas import JobLogCreate, JobStatusModel
from ..stores.job_history_store import JobHistoryStore
from ..stores.job_log_store import JobLogStore
from ..utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class JobLogger:
    """Writes job events to the run's persisted log and to the module logger."""

    def __init__(self, store: JobLogStore, job_name: str, run_id: str) -> None:
        self._store = store
        self._job_name = job_name
        self._run_id = run_id

    async def log(self, level: str, message: str, **context: Any) -> None:
        logger.log(_LEVELS[level], "[%s] %s", self._job_name, message)
        payload = JobLogCreate(level=level, message=message, context=context or None)
        await asyncio.to_thread(self._store.append, self._run_id, payload)

    async def debug(self, message: str, **context: Any) -> None:
        await self.log("debug", message, **context)

    async def info(self, message: str, **context: Any) -> None:
        await self.log("info", message, **context)

    async def warning(self, message: str, **context: Any) -> None:
        await self.log("warning", message, **context)

    async def error(self, message: str, **context: Any) -> None:
        await self.log("error", message, **context)


@dataclass
class JobContext:
    """Everything a job run receives from the scheduler."""

    job_name: str
    run_id: str
    token: CancellationToken
    log: JobLogger
    scheduler: "JobScheduler"
    provider_id: str | None = None
    follow_ups: list[tuple[str, str | None]] = field(default_factory=list)

    def request(self, job_name: str, *, provider_id: str | None = None) -> None:
        """Ask for another job to run after this run completes."""

        if job_name not in self.scheduler.job_names:
            raise UnknownJob(job_name)
        self.follow_ups.append((job_name, provider_id))


class Job(ABC):
    """A named unit of scheduled work."""

    name: ClassVar[str]
    default_cron: ClassVar[str | None] = None
    blocked_by: ClassVar[tuple[str, ...]] = ()
    post_execute: ClassVar[tuple[str, ...]] = ()

    @abstractmethod
    async def run(self, ctx: JobContext) -> dict[str, Any]:
        """Do the work; raise JobCancelled or JobFailed to end in those states."""


@dataclass
class _ActiveRun:
    token: CancellationToken
    provider_id: str | None
    run_id: str | None = None
    task: asyncio.Task | None = None


@dataclass
class _Entry:
    job: Job
    cron: str | None
    next_run: datetime | None = None
    last_execution: datetime | None = None
    last_status: str | None = None
    active: _ActiveRun | None = None


def _next_run(cron: str | None, base: datetime) -> datetime | None:
    if cron is None:
        return None
    return croniter(cron, base).get_next(datetime)


class JobScheduler:
    """Runs registered jobs on demand or on their cron cadence.

    Every job name has at most one active run. A trigger while the job (or
    one of the jobs listed in its ``blocked_by``) is running raises
    :class:`JobAlreadyRunning`. Each run gets a fresh ``run_id`` in
    JobHistory and its start and end are persisted.
    """

    def __init__(
        self,
        history: JobHistoryStore,
        logs: JobLogStore,
        *,
        soft_timeout: float = 0,
        tick_interval: float = 30,
        cron_enabled: bool = True,
    ) -> None:
        self._history = history
        self._logs = logs
        self._soft_timeout = soft_timeout
        self._tick_interval = tick_interval
        self._cron_enabled = cron_enabled
        self._entries: dict[str, _Entry] = {}
        self._background: set[asyncio.Task] = set()
        self._tick_task: asyncio.Task | None = None
        self._started = False

    # Registration -----------------------------------------------------

    def register(self, job: Job, cron: str | None = None) -> None:
        cron = cron if cron is not None else job.default_cron
        _validate_cron(job.name, cron)
        self._entries[job.name] = _Entry(job=job, cron=cron)

    def schedule(self, name: str, cron: str | None) -> None:
        """Replace the cadence of ``name``; ``None`` leaves it on-demand only."""

        entry = self._entry(name)
        _validate_cron(name, cron)
        entry.cron = cron
        entry.next_run = _next_run(cron, datetime.utcnow())

    @property
    def job_names(self) -> list[str]:
        return sorted(self._entries)

    @property
    def running(self) -> bool:
        return self._started

    def active(self) -> list[str]:
        return sorted(name for name, entry in self._entries.items() if entry.active is not None)

    def is_running(self, name: str) -> bool:
        return self._entry(name).active is not None

    # Triggers ---------------------------------------------------------

    async def trigger_now(self, name: str, *, provider_id: str | None = None) -> str:
        """Start a run of ``name`` and return its ``run_id``."""

        entry = self._entry(name)
        if entry.active is not None:
            raise JobAlreadyRunning(name)
        for other in entry.job.blocked_by:
            blocker = self._entries.get(other)
            if blocker is not None and blocker.active is not None:
                raise JobAlreadyRunning(name, blocked_by=other)

        active = _ActiveRun(token=CancellationToken(), provider_id=provider_id)
        entry.active = active
        try:
            record = await asyncio.to_thread(self._history.start_run, name, provider_id=provider_id)
        except Exception:
            entry.active = None
            raise
        active.run_id = record.run_id
        active.task = asyncio.create_task(self._execute(entry, active), name=f"job:{name}")
        return record.run_id

    async def try_trigger(self, name: str, *, provider_id: str | None = None) -> dict[str, Any]:
        """Trigger ``name`` and describe the outcome instead of raising on a running job."""

        outcome: dict[str, Any] = {"type": "trigger", "job": name}
        if provider_id is not None:
            outcome["provider_id"] = provider_id
        try:
            outcome["run_id"] = await self.trigger_now(name, provider_id=provider_id)
        except JobAlreadyRunning as exc:
            outcome["status"] = "already-running"
            if exc.blocked_by and exc.blocked_by != name:
                outcome["blocked_by"] = exc.blocked_by
        return outcome

    def request(self, name: str, *, provider_id: str | None = None) -> None:
        """Fire-and-forget trigger; a run already in progress satisfies the request."""

        self._entry(name)
        task = asyncio.create_task(self._request(name, provider_id), name=f"request:{name}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _request(self, name: str, provider_id: str | None) -> None:
        try:
            await self.trigger_now(name, provider_id=provider_id)
        except JobAlreadyRunning as exc:
            logger.info("Skipped trigger: %s", exc)

    def cancel(self, name: str, reason: str = "cancel requested") -> str:
        """Flag the active run of ``name`` for cancellation; returns its run id."""

        entry = self._entry(name)
        active = entry.active
        if active is None or active.run_id is None:
            raise JobNotRunning(name)
        active.token.cancel(reason)
        logger.info("Cancellation requested for %s (%s)", name, active.run_id)
        return active.run_id

    async def wait(self, name: str) -> None:
        """Wait until the current run of ``name`` (if any) has finished."""

        active = self._entry(name).active
        if active is not None and active.task is not None:
            await asyncio.wait({active.task})

    async def join(self) -> None:
        """Wait until no run and no pending trigger remains, including chained jobs."""

        while True:
            pending = set(self._background)
            pending.update(
                entry.active.task
                for entry in self._entries.values()
                if entry.active is not None and entry.active.task is not None
            )
            if not pending:
                return
            await asyncio.wait(pending)

    # Status -----------------------------------------------------------

    def status(self, name: str) -> JobStatusModel:
        entry = self._entry(name)
        active = entry.active
        return JobStatusModel(
            name=name,
            state="running" if active is not None else "idle",
            cron=entry.cron,
            run_id=active.run_id if active else None,
            provider_id=active.provider_id if active else None,
            last_execution=entry.last_execution,
            last_status=entry.last_status,
            next_run=entry.next_run,
            blocked_by=list(entry.job.blocked_by),
            post_execute=list(entry.job.post_execute),
        )

    def list_status(self) -> list[JobStatusModel]:
        return [self.status(name) for name in self.job_names]

    # Lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Restore history-derived state and begin cron evaluation."""

        if self._started:
            return
        reset = await asyncio.to_thread(self._history.reset_in_progress)
        if reset:
            logger.warning("Marked %d interrupted job runs as cancelled", reset)
        last = await asyncio.to_thread(self._history.last_executions)
        now = datetime.utcnow()
        for name, entry in self._entries.items():
            if name in last:
                entry.last_execution, entry.last_status = last[name]
            entry.next_run = _next_run(entry.cron, entry.last_execution or now)
        self._started = True
        if self._cron_enabled:
            self._tick_task = asyncio.create_task(self._tick_loop(), name="scheduler-tick")
        logger.info("Scheduler started with %d jobs", len(self._entries))

    async def stop(self) -> None:
        """Stop cron evaluation, cancel active runs and wait for them to record their outcome."""

        if self._tick_task is not None:
            self._tick_task.cancel()
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None
        for entry in self._entries.values():
            if entry.active is not None:
                entry.active.token.cancel("scheduler stopped")
        await self.join()
        self._started = False
        logger.info("Scheduler stopped")

    def fire_due(self, now: datetime | None = None) -> list[str]:
        """Request every job whose next cron time has passed; returns their names."""

        now = now or datetime.utcnow()
        fired = []
        for name, entry in self._entries.items():
            if entry.next_run is None or entry.next_run > now:
                continue
            entry.next_run = _next_run(entry.cron, now)
            self.request(name)
            fired.append(name)
        return fired

    async def _tick_loop(self) -> None:
        while True:
            self.fire_due()
            await asyncio.sleep(self._tick_interval)

    # Execution --------------------------------------------------------

    async def _execute(self, entry: _Entry, active: _ActiveRun) -> None:
        job = entry.job
        run_id = active.run_id
        assert run_id is not None
        log = JobLogger(self._logs, job.name, run_id)
        ctx = JobContext(
            job_name=job.name,
            run_id=run_id,
            token=active.token,
            log=log,
            scheduler=self,
            provider_id=active.provider_id,
        )
        timeout_handle = None
        if self._soft_timeout > 0:
            timeout_handle = asyncio.get_running_loop().call_later(
                self._soft_timeout, active.token.cancel, "soft timeout"
            )

        status = "completed"
        result: dict[str, Any] | None = None
        error: str | None = None
        interrupted = False
        try:
            await log.info("Job started", provider_id=active.provider_id)
            result = await job.run(ctx)
        except JobCancelled as exc:
            status, result, error = "cancelled", exc.result, exc.reason
        except JobFailed as exc:
            status, result, error = "failed", exc.result, str(exc)
        except asyncio.CancelledError:
            status, error, interrupted = "cancelled", "task cancelled", True
        except Exception as exc:
            logger.exception("Job %s raised", job.name)
            status, error = "failed", f"{type(exc).__name__}: {exc}"
        finally:
            if timeout_handle is not None:
                timeout_handle.cancel()

        try:
            finished = await asyncio.to_thread(
                self._history.finish_run, run_id, status=status, result=result, error_message=error
            )
            level = {"completed": "info", "cancelled": "warning"}.get(status, "error")
            context = {"error": error} if error else {}
            await log.log(level, f"Job {status}", **context)
            entry.last_execution = finished.started_at
        except RepositoryError as exc:
            logger.error("Could not record outcome of %s run %s: %s", job.name, run_id, exc)
        finally:
            entry.last_status = status
            entry.active = None

        if interrupted:
            raise asyncio.CancelledError()
        if status == "completed":
            follow_ups = [*ctx.follow_ups, *((name, None) for name in job.post_execute)]
            for follow_up, provider_id in follow_ups:
                if follow_up in self._entries:
                    self.request(follow_up, provider_id=provider_id)

    def _entry(self, name: str) -> _Entry:
        try:
            return self._entries[name]
        except KeyError:
            raise UnknownJob(name) from None


def _validate_cron(name: str, cron: str | None) -> None:
    if cron is not None and not croniter.is_valid(cron):
        raise ConfigError(f"Invalid cron expression for {name}: {cron!r}")
