"""Tests for the Typer-based engine CLI."""
from __future__ import annotations

import importlib
import json
from contextlib import nullcontext
from typing import Iterator

import httpx
import pytest
from fastapi.testclient import TestClient
from typer.testing import CliRunner

from marquee.cli import client as client_module

cli_app_module = importlib.import_module("marquee.cli.app")
cli_app = cli_app_module.app


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def cli_client(client: TestClient) -> Iterator[TestClient]:
    """Point the CLI's HTTP client factory at the in-process API."""

    original_factory = client_module.create_client
    original_app_factory = cli_app_module.create_client

    def _factory(base_url: str, *, timeout: float = 10.0, transport=None):  # type: ignore[override]
        return nullcontext(client)

    client_module.create_client = _factory  # type: ignore[assignment]
    cli_app_module.create_client = _factory  # type: ignore[assignment]
    try:
        yield client
    finally:
        client_module.create_client = original_factory  # type: ignore[assignment]
        cli_app_module.create_client = original_app_factory  # type: ignore[assignment]


def test_health_command_outputs_status(runner: CliRunner, cli_client: TestClient) -> None:
    """The health command should display OK status."""

    result = runner.invoke(cli_app, ["health"])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert payload["scheduler"]["jobs"] == 7


def test_jobs_list_outputs_registered_jobs(runner: CliRunner, cli_client: TestClient) -> None:
    result = runner.invoke(cli_app, ["jobs", "list"])

    assert result.exit_code == 0
    names = [job["name"] for job in json.loads(result.output)]
    assert "sync_provider_titles" in names
    assert "cache_purge" in names


def test_jobs_status_reports_unknown_job(runner: CliRunner, cli_client: TestClient) -> None:
    """Unknown jobs should surface the API error and exit non-zero."""

    result = runner.invoke(cli_app, ["jobs", "status", "missing"])

    assert result.exit_code == 1
    assert "Error 404" in result.output


def test_jobs_trigger_history_and_logs(runner: CliRunner, cli_client: TestClient) -> None:
    """A triggered run should be visible through history and logs."""

    triggered = runner.invoke(cli_app, ["jobs", "trigger", "cache_purge"])
    assert triggered.exit_code == 0
    run_id = json.loads(triggered.output)["run_id"]

    cli_client.portal.call(cli_client.app.state.runtime.scheduler.join)

    history = runner.invoke(cli_app, ["jobs", "history", "cache_purge", "--status", "completed"])
    assert history.exit_code == 0
    runs = json.loads(history.output)
    assert [run["run_id"] for run in runs] == [run_id]

    logs = runner.invoke(cli_app, ["jobs", "logs", run_id, "--level", "info"])
    assert logs.exit_code == 0
    assert [event["message"] for event in json.loads(logs.output)] == ["Job started", "Job completed"]


def test_jobs_history_rejects_invalid_status(runner: CliRunner, cli_client: TestClient) -> None:
    result = runner.invoke(cli_app, ["jobs", "history", "cleanup", "--status", "paused"])

    assert result.exit_code == 1
    assert "Invalid status filter(s): paused" in result.output


def test_jobs_cancel_when_idle_fails(runner: CliRunner, cli_client: TestClient) -> None:
    result = runner.invoke(cli_app, ["jobs", "cancel", "cleanup"])

    assert result.exit_code == 1
    assert "Error 409" in result.output


def test_providers_list_starts_empty(runner: CliRunner, cli_client: TestClient) -> None:
    result = runner.invoke(cli_app, ["providers", "list"])

    assert result.exit_code == 0
    assert json.loads(result.output) == []


def test_provider_event_validates_arguments(runner: CliRunner, cli_client: TestClient) -> None:
    """Bad actions and malformed JSON are rejected before calling the API."""

    unknown = runner.invoke(cli_app, ["providers", "event", "p1", "renamed"])
    assert unknown.exit_code == 1
    assert "Unknown action: renamed" in unknown.output

    malformed = runner.invoke(cli_app, ["providers", "event", "p1", "created", "--config", "{not json"])
    assert malformed.exit_code == 1
    assert "Invalid JSON config" in malformed.output


def test_provider_event_reports_unknown_provider(runner: CliRunner, cli_client: TestClient) -> None:
    result = runner.invoke(cli_app, ["providers", "event", "ghost", "disabled"])

    assert result.exit_code == 1
    assert "Error 404" in result.output


def test_create_client_targets_api_base() -> None:
    """The client factory should normalise the base URL and identify the CLI."""

    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "ok"})

    with client_module.create_client("http://engine.local:8000/", transport=httpx.MockTransport(handler)) as http:
        http.get("/health")

    assert str(seen[0].url) == "http://engine.local:8000/health"
    assert seen[0].headers["user-agent"] == client_module.USER_AGENT
    assert seen[0].headers["accept"] == "application/json"
