"""Command line interface for the Marquee engine API."""
from __future__ import annotations

import json
from typing import Any, List, Optional

import httpx
import typer

from .client import create_client


DEFAULT_API_BASE = "http://localhost:8000"

app = typer.Typer(help="Operate the Marquee catalog engine.")
jobs_app = typer.Typer(help="Inspect, trigger and cancel engine jobs.")
app.add_typer(jobs_app, name="jobs")
providers_app = typer.Typer(help="Inspect providers and send lifecycle events.")
app.add_typer(providers_app, name="providers")


PROVIDER_ACTIONS = ("created", "updated", "enabled", "disabled", "deleted", "categories-changed")
JOB_STATUS_CHOICES = {"running", "completed", "failed", "cancelled"}


def _api_base_option() -> typer.Option:
    return typer.Option(
        DEFAULT_API_BASE,
        "--api-base",
        help="Base URL for the engine API.",
        show_default=True,
        envvar="MARQUEE_API_BASE",
    )


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _raise_for_status(response: httpx.Response) -> None:
    """Turn API errors into a readable message and a non-zero exit code."""

    if response.is_success:
        return
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    typer.echo(f"Error {response.status_code}: {detail}", err=True)
    raise typer.Exit(code=1)


@app.command()
def health(api_base: str = _api_base_option()) -> None:
    """Call the /health endpoint and pretty-print the response."""

    with create_client(api_base) as client:
        response = client.get("/health")
        _raise_for_status(response)
        _echo(response.json())


@jobs_app.command("list")
def list_jobs(api_base: str = _api_base_option()) -> None:
    """List registered jobs with their cadence and state."""

    with create_client(api_base) as client:
        response = client.get("/jobs")
        _raise_for_status(response)
        _echo(response.json())


@jobs_app.command("status")
def job_status(name: str = typer.Argument(..., help="Job name."), api_base: str = _api_base_option()) -> None:
    with create_client(api_base) as client:
        response = client.get(f"/jobs/{name}")
        _raise_for_status(response)
        _echo(response.json())


@jobs_app.command("trigger")
def trigger_job(
    name: str = typer.Argument(..., help="Job name."),
    provider: Optional[str] = typer.Option(None, "--provider", help="Restrict the run to one provider id."),
    api_base: str = _api_base_option(),
) -> None:
    """Start a job run now."""

    payload = {"provider_id": provider} if provider else None
    with create_client(api_base) as client:
        response = client.post(f"/jobs/{name}/trigger", json=payload)
        _raise_for_status(response)
        _echo(response.json())


@jobs_app.command("cancel")
def cancel_job(name: str = typer.Argument(..., help="Job name."), api_base: str = _api_base_option()) -> None:
    """Request cancellation of a running job."""

    with create_client(api_base) as client:
        response = client.post(f"/jobs/{name}/cancel")
        _raise_for_status(response)
        _echo(response.json())


@jobs_app.command("history")
def job_history(
    name: str = typer.Argument(..., help="Job name."),
    limit: int = typer.Option(20, min=1, max=100, help="Maximum number of runs to return."),
    status: Optional[List[str]] = typer.Option(
        None,
        "--status",
        help="Filter by run status. Repeat to include several statuses.",
    ),
    api_base: str = _api_base_option(),
) -> None:
    """Show recent runs of a job."""

    statuses = status or []
    invalid = sorted(set(statuses) - JOB_STATUS_CHOICES)
    if invalid:
        typer.echo(f"Invalid status filter(s): {', '.join(invalid)}", err=True)
        raise typer.Exit(code=1)

    params: list[tuple[str, str | int]] = [("limit", limit)]
    params.extend(("status", value) for value in statuses)
    with create_client(api_base) as client:
        response = client.get(f"/jobs/{name}/history", params=params)
        _raise_for_status(response)
        _echo(response.json())


@jobs_app.command("logs")
def job_logs(
    run_id: str = typer.Argument(..., help="Run identifier."),
    limit: int = typer.Option(100, min=1, max=500, help="Maximum number of events."),
    level: Optional[str] = typer.Option(None, help="Only show events at or above this level."),
    api_base: str = _api_base_option(),
) -> None:
    """Show the log events of one run."""

    params: dict[str, str | int] = {"limit": limit}
    if level:
        params["level"] = level
    with create_client(api_base) as client:
        response = client.get(f"/jobs/runs/{run_id}/logs", params=params)
        _raise_for_status(response)
        _echo(response.json())


@providers_app.command("list")
def list_providers(api_base: str = _api_base_option()) -> None:
    """List providers known to the engine."""

    with create_client(api_base) as client:
        response = client.get("/providers")
        _raise_for_status(response)
        _echo(response.json())


@providers_app.command("event")
def provider_event(
    provider_id: str = typer.Argument(..., help="Provider id."),
    action: str = typer.Argument(..., help=f"One of: {', '.join(PROVIDER_ACTIONS)}."),
    config: Optional[str] = typer.Option(None, "--config", help="JSON provider configuration or changes."),
    api_base: str = _api_base_option(),
) -> None:
    """Send a lifecycle event for a provider."""

    if action not in PROVIDER_ACTIONS:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(code=1)

    payload: dict[str, object] = {"action": action}
    if config is not None:
        try:
            payload["config"] = json.loads(config)
        except json.JSONDecodeError as exc:
            typer.echo(f"Invalid JSON config: {exc}", err=True)
            raise typer.Exit(code=1) from exc

    with create_client(api_base) as client:
        response = client.post(f"/providers/{provider_id}/events", json=payload)
        _raise_for_status(response)
        _echo(response.json())
