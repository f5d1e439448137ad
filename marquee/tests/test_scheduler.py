"""Tests for the job scheduler, its history and its run logs."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import pytest

from marquee.engine.db import create_engine_from_settings, init_database
from marquee.engine.errors import (
    ConfigError,
    JobAlreadyRunning,
    JobCancelled,
    JobFailed,
    JobNotRunning,
    UnknownJob,
)
from marquee.engine.services.scheduler import Job, JobContext, JobScheduler
from marquee.engine.settings import EngineSettings
from marquee.engine.stores.job_history_store import JobHistoryStore
from marquee.engine.stores.job_log_store import JobLogStore


class GateJob(Job):
    """Runs until released or cancelled."""

    name = "gate"
    default_cron = None

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.provider_ids: list[str | None] = []

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        self.provider_ids.append(ctx.provider_id)
        self.started.set()
        while not self.release.is_set():
            await ctx.token.sleep(0.01)
        await ctx.log.info("released")
        return {"released": True}


class BlockedJob(Job):
    name = "blocked"
    blocked_by = ("gate",)

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        return {}


class CountingJob(Job):
    name = "counting"
    default_cron = "*/5 * * * *"

    def __init__(self) -> None:
        self.runs = 0

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        self.runs += 1
        return {"runs": self.runs}


class ChainJob(Job):
    name = "chain"
    post_execute = ("counting",)

    def __init__(self, outcome: str = "ok") -> None:
        self.outcome = outcome

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        if self.outcome == "fail":
            raise JobFailed("bad data", result={"checked": 3})
        if self.outcome == "crash":
            raise RuntimeError("boom")
        ctx.request("gate", provider_id="p1")
        return {"ok": True}


class StuckJob(Job):
    name = "stuck"

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        while True:
            try:
                await ctx.token.sleep(1)
            except JobCancelled as exc:
                raise JobCancelled(exc.reason, result={"partial": True}) from exc


@pytest.fixture()
def stores(settings: EngineSettings) -> tuple[JobHistoryStore, JobLogStore]:
    engine = create_engine_from_settings(settings)
    init_database(engine)
    return JobHistoryStore(engine), JobLogStore(engine)


def _scheduler(stores, *jobs: Job, **kwargs: Any) -> JobScheduler:
    history, logs = stores
    scheduler = JobScheduler(history, logs, cron_enabled=False, **kwargs)
    for job in jobs:
        scheduler.register(job)
    return scheduler


def test_completed_run_is_recorded_with_logs(stores) -> None:
    history, logs = stores

    async def scenario() -> str:
        scheduler = _scheduler(stores, CountingJob())
        run_id = await scheduler.trigger_now("counting")
        assert scheduler.is_running("counting")
        await scheduler.join()
        assert not scheduler.is_running("counting")
        assert scheduler.status("counting").last_status == "completed"
        return run_id

    run_id = asyncio.run(scenario())

    record = history.get(run_id)
    assert record.status == "completed"
    assert record.result == {"runs": 1}
    assert record.finished_at is not None
    assert [event.message for event in logs.list_for_run(run_id)] == ["Job started", "Job completed"]


def test_second_trigger_is_rejected_while_running(stores) -> None:
    """A job name never has two active runs."""

    history, _logs = stores

    async def scenario() -> None:
        gate = GateJob()
        scheduler = _scheduler(stores, gate)
        run_id = await scheduler.trigger_now("gate")
        await gate.started.wait()

        with pytest.raises(JobAlreadyRunning):
            await scheduler.trigger_now("gate")
        outcome = await scheduler.try_trigger("gate", provider_id="p1")
        assert outcome == {"type": "trigger", "job": "gate", "provider_id": "p1", "status": "already-running"}
        assert scheduler.status("gate").run_id == run_id
        assert history.running_count("gate") == 1

        gate.release.set()
        await scheduler.join()

    asyncio.run(scenario())
    assert history.running_count("gate") == 0


def test_blocked_by_prevents_overlap(stores) -> None:
    async def scenario() -> None:
        gate = GateJob()
        scheduler = _scheduler(stores, gate, BlockedJob())
        await scheduler.trigger_now("gate")
        await gate.started.wait()

        with pytest.raises(JobAlreadyRunning) as excinfo:
            await scheduler.trigger_now("blocked")
        assert excinfo.value.blocked_by == "gate"
        outcome = await scheduler.try_trigger("blocked")
        assert outcome["blocked_by"] == "gate"

        gate.release.set()
        await scheduler.join()
        await scheduler.trigger_now("blocked")
        await scheduler.join()

    asyncio.run(scenario())


def test_cancel_marks_the_run_cancelled(stores) -> None:
    history, logs = stores

    async def scenario() -> str:
        gate = GateJob()
        scheduler = _scheduler(stores, gate)
        with pytest.raises(JobNotRunning):
            scheduler.cancel("gate")
        run_id = await scheduler.trigger_now("gate")
        await gate.started.wait()
        assert scheduler.cancel("gate", "operator request") == run_id
        await scheduler.join()
        assert scheduler.active() == []
        return run_id

    run_id = asyncio.run(scenario())

    record = history.get(run_id)
    assert record.status == "cancelled"
    assert record.error_message == "operator request"
    assert logs.list_for_run(run_id, min_level="warning")[0].message == "Job cancelled"


def test_soft_timeout_cancels_with_partial_result(stores) -> None:
    history, _logs = stores

    async def scenario() -> str:
        scheduler = _scheduler(stores, StuckJob(), soft_timeout=0.05)
        run_id = await scheduler.trigger_now("stuck")
        await scheduler.join()
        return run_id

    record = history.get(asyncio.run(scenario()))
    assert record.status == "cancelled"
    assert record.error_message == "soft timeout"
    assert record.result == {"partial": True}


def test_failures_are_recorded(stores) -> None:
    history, _logs = stores

    async def scenario() -> tuple[str, str]:
        scheduler = _scheduler(stores, ChainJob("fail"), CountingJob(), GateJob())
        failed = await scheduler.trigger_now("chain")
        await scheduler.join()
        scheduler.register(ChainJob("crash"))
        crashed = await scheduler.trigger_now("chain")
        await scheduler.join()
        return failed, crashed

    failed, crashed = asyncio.run(scenario())

    assert history.get(failed).status == "failed"
    assert history.get(failed).result == {"checked": 3}
    assert history.get(failed).error_message == "bad data"
    assert history.get(crashed).error_message == "RuntimeError: boom"
    assert history.list(job_name="counting") == []


def test_follow_ups_run_after_completion(stores) -> None:
    """Requested jobs and post-execute jobs start only once the run has completed."""

    history, _logs = stores

    async def scenario() -> GateJob:
        gate = GateJob()
        gate.release.set()
        counting = CountingJob()
        scheduler = _scheduler(stores, ChainJob(), counting, gate)
        await scheduler.trigger_now("chain")
        await scheduler.join()
        assert counting.runs == 1
        return gate

    gate = asyncio.run(scenario())

    assert gate.provider_ids == ["p1"]
    assert [record.status for record in history.list(job_name="gate")] == ["completed"]


def test_request_validates_job_names(stores) -> None:
    async def scenario() -> None:
        scheduler = _scheduler(stores, CountingJob())
        with pytest.raises(UnknownJob):
            await scheduler.trigger_now("missing")
        with pytest.raises(UnknownJob):
            scheduler.request("missing")
        with pytest.raises(UnknownJob):
            scheduler.status("missing")

    asyncio.run(scenario())


def test_invalid_cron_is_a_config_error(stores) -> None:
    history, logs = stores
    scheduler = JobScheduler(history, logs)

    with pytest.raises(ConfigError):
        scheduler.register(CountingJob(), "every five minutes")

    scheduler.register(CountingJob())
    with pytest.raises(ConfigError):
        scheduler.schedule("counting", "61 * * * *")
    scheduler.schedule("counting", None)
    assert scheduler.status("counting").cron is None
    assert scheduler.status("counting").next_run is None


def test_start_recovers_interrupted_runs_and_cadence(stores) -> None:
    """Runs left running by a previous process become cancelled on start."""

    history, _logs = stores
    stale = history.start_run("counting")
    finished = history.start_run("gate")
    history.finish_run(finished.run_id, status="completed")

    async def scenario() -> JobScheduler:
        scheduler = _scheduler(stores, CountingJob(), GateJob())
        await scheduler.start()
        await scheduler.stop()
        return scheduler

    scheduler = asyncio.run(scenario())

    recovered = history.get(stale.run_id)
    assert recovered.status == "cancelled"
    assert recovered.error_message == "interrupted by restart"
    assert scheduler.status("gate").last_status == "completed"
    assert scheduler.status("gate").next_run is None
    assert scheduler.status("counting").next_run is not None


def test_fire_due_requests_jobs_whose_time_has_passed(stores) -> None:
    async def scenario() -> tuple[list[str], int]:
        counting = CountingJob()
        scheduler = _scheduler(stores, counting, GateJob())
        await scheduler.start()
        next_run = scheduler.status("counting").next_run
        assert scheduler.fire_due(next_run - timedelta(seconds=1)) == []
        fired = scheduler.fire_due(next_run + timedelta(seconds=1))
        await scheduler.join()
        assert scheduler.status("counting").next_run > next_run
        await scheduler.stop()
        return fired, counting.runs

    fired, runs = asyncio.run(scenario())

    assert fired == ["counting"]
    assert runs == 1


def test_stop_cancels_active_runs(stores) -> None:
    history, _logs = stores

    async def scenario() -> str:
        gate = GateJob()
        scheduler = _scheduler(stores, gate)
        await scheduler.start()
        run_id = await scheduler.trigger_now("gate")
        await gate.started.wait()
        await scheduler.stop()
        assert not scheduler.running
        return run_id

    record = history.get(asyncio.run(scenario()))
    assert record.status == "cancelled"
    assert record.error_message == "scheduler stopped"
    assert record.finished_at <= datetime.utcnow()
