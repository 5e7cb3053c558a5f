"""Operator CLI -- Typer-based interface to the membership engine.

Commands run against the database configured through ``MEMBERSHIP_*``
environment variables.  Human-readable output goes to *stderr* via Rich;
``--json`` prints machine-readable results to stdout.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import typer
from membership_core.models.job import JobExecution, JobExecutionStatus
from membership_core.state.database import create_tables
from rich.console import Console
from rich.table import Table

from membership_api.dependencies import Services, build_services
from membership_api.services.jobs import UnknownJobError

app = typer.Typer(
    name="membership",
    help="Membership lifecycle engine - jobs, ledger and server.",
    no_args_is_help=True,
)
console = Console(stderr=True)

_STATUS_STYLES: dict[JobExecutionStatus, str] = {
    JobExecutionStatus.RUNNING: "yellow",
    JobExecutionStatus.SUCCESS: "green",
    JobExecutionStatus.FAILED: "red",
}


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Global options applied to every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _open_services() -> Services:
    services = build_services()
    if services.settings.database_url.startswith("sqlite"):
        await create_tables(services.engine)
    return services


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _display_executions(executions: list[JobExecution]) -> None:
    if not executions:
        console.print("[dim]No job executions recorded.[/dim]")
        return
    table = Table(title=f"Job executions ({len(executions)})", expand=False)
    table.add_column("Job", style="bold")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Error")
    for execution in executions:
        style = _STATUS_STYLES.get(execution.status, "white")
        table.add_row(
            execution.job_name,
            f"[{style}]{execution.status.value}[/{style}]",
            execution.started_at.isoformat(timespec="seconds"),
            f"{execution.duration_ms} ms" if execution.duration_ms is not None else "-",
            execution.error_message or "",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("run-job")
def run_job(
    job_name: str = typer.Argument(..., help="Job name, e.g. membership:reconciliation."),
    json_output: bool = typer.Option(False, "--json", help="Print the job result as JSON."),
) -> None:
    """Run one job now, under the job lock and the execution ledger."""

    async def _run() -> dict[str, Any]:
        services = await _open_services()
        try:
            return await services.runner.run(job_name)
        finally:
            await services.aclose()

    try:
        result = asyncio.run(_run())
    except UnknownJobError:
        console.print(f"[red]Unknown job '{job_name}'.[/red]")
        raise typer.Exit(code=2) from None
    except Exception as exc:
        console.print(f"[red]Job {job_name} failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc

    if json_output:
        _print_json(result)
    elif result.get("skipped"):
        console.print(f"[yellow]Job {job_name} is already running; skipped.[/yellow]")
    else:
        console.print(f"[green]Job {job_name} finished.[/green]")
        for key, value in sorted(result.items()):
            console.print(f"  {key}: {value}")
    if not result.get("success", False):
        raise typer.Exit(code=1)


@app.command("executions")
def executions(
    latest: bool = typer.Option(False, "--latest", help="Only the newest execution of each job."),
    job_name: str | None = typer.Option(None, "--job", help="Filter by job name."),
    limit: int = typer.Option(20, "--limit", min=1, max=500),
    json_output: bool = typer.Option(False, "--json", help="Print executions as JSON."),
) -> None:
    """List recent job executions from the ledger."""

    async def _load() -> list[JobExecution]:
        services = await _open_services()
        try:
            if latest:
                return await services.ledger.latest_executions()
            return await services.ledger.recent_executions(limit=limit, job_name=job_name)
        finally:
            await services.aclose()

    rows = asyncio.run(_load())
    if json_output:
        _print_json([row.model_dump(mode="json") for row in rows])
    else:
        _display_executions(rows)


@app.command("init-db")
def init_db() -> None:
    """Create all tables.  For local SQLite use; PostgreSQL is migrated with Alembic."""

    async def _init() -> str:
        services = build_services()
        try:
            await create_tables(services.engine)
            return services.settings.database_url.split("@")[-1]
        finally:
            await services.aclose()

    target = asyncio.run(_init())
    console.print(f"[green]Tables ready on {target}[/green]")


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (default: API_HOST)."),
    port: int | None = typer.Option(None, "--port", help="Port (default: API_PORT)."),
) -> None:
    """Run the HTTP API and, when enabled, the job scheduler."""
    import uvicorn

    from membership_api.dependencies import get_settings

    api_settings = get_settings()
    uvicorn.run(
        "membership_api.main:app",
        host=host or api_settings.host,
        port=port or api_settings.port,
        log_level="debug" if api_settings.debug else "info",
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
