from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from leadflow import services
from leadflow.config import get_settings
from leadflow.db import init_db, session_scope
from leadflow.errors import LeadflowError
from leadflow.lifecycle import LifecycleService
from leadflow.locks import RecordLockService
from leadflow.pipeline import PipelineService
from leadflow.store import EntityStore
from leadflow.sweep import LeadSweep

app = typer.Typer(help="Leadflow: investment lead and opportunity lifecycle")
console = Console()
log = logging.getLogger(__name__)


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    project_root: str | None = typer.Option(
        None,
        "--project-root",
        help="Directory holding config/ and data/ (defaults to the working directory).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["LEADFLOW_HOME"] = str(Path(project_root).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items()) or "-"
        table.add_row(key, "-" if value is None else str(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _fail(exc: LeadflowError) -> None:
    console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Create tables and seed the checklist templates."""
    init_db(db_url)
    _print("init-db", {"status": "ok", "database_url_override": db_url}, ctx)


@app.command("add-user")
def add_user_command(
    ctx: typer.Context,
    email: str = typer.Option(..., help="Login email"),
    name: str = typer.Option("", "--name", help="Full name"),
    role: str = typer.Option(
        "investor_services",
        help="investor_services, legal_services, property_development or senior_management",
    ),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Create a user profile. The first senior user has to come from here."""
    init_db(db_url)
    with session_scope() as session:
        try:
            profile = services.create_profile(EntityStore(session), email, name, role)
        except LeadflowError as exc:
            _fail(exc)
        _print("add-user", services.profile_summary(profile), ctx)


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


def _run_sweep_once(replay_deferred: bool = True) -> dict[str, int]:
    with session_scope() as session:
        return LeadSweep(EntityStore(session), get_settings()).run(replay_deferred=replay_deferred).to_dict()


@app.command("sweep")
def sweep_command(
    ctx: typer.Context,
    replay: bool = typer.Option(True, "--replay/--no-replay", help="Also retry queued mirror writes."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Run the lead automation sweep once."""
    init_db(db_url)
    if _wants_json(ctx):
        result = _run_sweep_once(replay)
    else:
        with console.status("[bold cyan]Sweeping leads[/bold cyan]", spinner="dots"):
            result = _run_sweep_once(replay)
    _print("sweep", result, ctx)


@app.command("replay-deferred")
def replay_deferred_command(
    ctx: typer.Context,
    limit: int | None = typer.Option(None, help="Replay at most this many queued writes."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Retry status mirror writes that failed after their primary write committed."""
    init_db(db_url)
    with session_scope() as session:
        result = LifecycleService(EntityStore(session)).replay_deferred_writes(limit)
    _print("replay-deferred", {
        "resolved": result.resolved, "failed": result.failed, "abandoned": result.abandoned,
    }, ctx)


@app.command("purge-locks")
def purge_locks_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Delete expired record locks."""
    init_db(db_url)
    with session_scope() as session:
        removed = RecordLockService(EntityStore(session)).purge_expired()
    _print("purge-locks", {"removed": removed}, ctx)


@app.command("schedule")
def schedule_command(
    hours: int | None = typer.Option(None, help="Sweep interval in hours (default from settings)."),
    run_now: bool = typer.Option(True, "--run-now/--no-run-now", help="Run one sweep before waiting."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Run the sweep on a fixed interval until interrupted."""
    init_db(db_url)
    interval = hours or get_settings().sweep_interval_hours
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_sweep_once,
        IntervalTrigger(hours=interval),
        id="lead_sweep",
        name="Lead automation sweep",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    if run_now:
        log.info("Initial sweep: %s", _run_sweep_once())
    console.print(f"[green]Scheduler started[/green], sweeping every {interval}h. Ctrl+C to stop.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown(wait=False)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


@app.command("pipeline")
def pipeline_command(
    ctx: typer.Context,
    pipeline_type: str = typer.Option("lead", "--type", help="lead or opportunity"),
    search: str | None = typer.Option(None, help="Case-insensitive name filter"),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Show pipeline stage buckets."""
    init_db(db_url)
    with session_scope() as session:
        try:
            buckets = PipelineService(EntityStore(session)).project(pipeline_type, search)
        except LeadflowError as exc:
            _fail(exc)
        payload = services.pipeline_payload(pipeline_type, buckets)

    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold yellow", box=ROUNDED)
    table.add_column("Stage", style="bold")
    table.add_column("Count", justify="right")
    table.add_column("Items")
    for bucket in payload:
        names = [str(i.get("name") or i.get("lead_name") or i["id"]) for i in bucket["items"]]
        preview = ", ".join(names[:5]) + (" ..." if len(names) > 5 else "")
        table.add_row(bucket["stage_name"], str(bucket["count"]), preview or "-")
    console.print(Panel(table, title=f"pipeline · {pipeline_type}", border_style="yellow"))


@app.command("stats")
def stats_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Aggregate counts."""
    init_db(db_url)
    with session_scope() as session:
        stats = services.compute_stats(EntityStore(session))
    _print("stats", stats, ctx)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8002, help="Port"),
) -> None:
    """Start the HTTP API."""
    import uvicorn
    uvicorn.run("leadflow.app:app", host=host, port=port)


if __name__ == "__main__":
    app()
