"""mealctl -- Typer-based operator interface for the mealcycle engine.

Provides commands for inspecting billing-cycle boundaries, creating the
schema, and running the daily maintenance tasks and renewal sweep against
a database directly (without the HTTP service).  Human-readable output goes
to *stderr* via Rich; ``--json`` switches every command to machine-readable
JSON on *stdout* so that cron wrappers can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import date
from typing import Any

import typer
from rich.console import Console

from meal_cli.display import display_cycles, display_maintenance_report, display_renewal_report
from meal_engine.config import EngineSettings, load_engine_settings
from meal_engine.models.enums import PeriodType
from meal_engine.scheduling.cycles import classify_date, compute_cycle, next_cycle

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="mealctl",
    help="mealctl - billing-cycle and fulfillment operations for meal subscriptions",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log engine activity to stderr.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode
    if verbose:
        logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_date(value: str, label: str) -> date:
    """Parse a YYYY-MM-DD string into a :class:`date`, raising on failure."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} date '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _load_settings(database_url: str | None) -> EngineSettings:
    overrides: dict[str, Any] = {}
    if database_url:
        overrides["database_url"] = database_url
    try:
        return load_engine_settings(**overrides)
    except ValueError as exc:
        console.print(f"[red]Invalid engine settings: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _database_url_option() -> Any:
    return typer.Option(None, "--database-url", help="SQLAlchemy async URL; defaults to MEAL_DATABASE_URL.")


# ---------------------------------------------------------------------------
# cycle
# ---------------------------------------------------------------------------


@app.command()
def cycle(
    period: PeriodType = typer.Argument(..., help="Billing period: weekly or monthly."),
    reference: str = typer.Argument(..., help="Any date inside the first cycle (YYYY-MM-DD)."),
    count: int = typer.Option(1, "--count", "-n", min=1, max=52, help="Number of consecutive cycles to show."),
    next_boundary: bool = typer.Option(
        False,
        "--next-boundary",
        help="When the date is itself a boundary, start from the following cycle.",
    ),
    as_of: str | None = typer.Option(
        None,
        "--as-of",
        help="Label each cycle as past, current, next or future relative to this date (YYYY-MM-DD).",
    ),
) -> None:
    """Show the billing cycle containing a date and the cycles after it."""
    day = _parse_date(reference, "reference")

    cycles = [compute_cycle(period, day, next_boundary=next_boundary)]
    while len(cycles) < count:
        cycles.append(next_cycle(cycles[-1]))

    positions = None
    if as_of is not None:
        today = _parse_date(as_of, "as-of")
        positions = [classify_date(period, today, c.cycle_start).value for c in cycles]

    if _json_output:
        rows: list[dict[str, Any]] = [
            {
                "period_type": c.period_type.value,
                "cycle_start": c.cycle_start.isoformat(),
                "cycle_end": c.cycle_end.isoformat(),
                "renewal_date": c.renewal_date.isoformat(),
                "days": c.length_days,
            }
            for c in cycles
        ]
        if positions is not None:
            for row, position in zip(rows, positions):
                row["position"] = position
        _emit_json(rows)
    else:
        display_cycles(console, cycles, positions)


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


async def _create_schema(settings: EngineSettings) -> None:
    from meal_engine.state.database import create_schema, get_engine

    engine = get_engine(settings.database_url)
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()


@app.command("init-db")
def init_db(database_url: str | None = _database_url_option()) -> None:
    """Create every table that does not exist yet.

    Intended for local and development databases; production schemas are
    managed with Alembic migrations.
    """
    settings = _load_settings(database_url)
    try:
        asyncio.run(_create_schema(settings))
    except Exception as exc:
        console.print(f"[red]Schema creation failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json({"status": "ok"})
    else:
        console.print("[green]Schema is up to date.[/green]")


# ---------------------------------------------------------------------------
# maintenance
# ---------------------------------------------------------------------------


async def _run_maintenance(settings: EngineSettings, only: list[str] | None):
    from sqlalchemy.ext.asyncio import async_sessionmaker

    from meal_engine.clock import SystemClock
    from meal_engine.maintenance.scheduler import MaintenanceScheduler
    from meal_engine.state.database import get_engine

    engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    try:
        scheduler = MaintenanceScheduler(async_sessionmaker(engine, expire_on_commit=False), SystemClock(), settings)
        if only:
            unknown = sorted(set(only) - set(scheduler.tasks()))
            if unknown:
                raise ValueError(
                    f"Unknown maintenance task(s): {', '.join(unknown)}. Valid: {', '.join(scheduler.tasks())}"
                )
        return await scheduler.run_daily(only=only)
    finally:
        await engine.dispose()


@app.command()
def maintenance(
    task: list[str] | None = typer.Option(
        None,
        "--task",
        "-t",
        help="Run only this task (repeatable).",
    ),
    database_url: str | None = _database_url_option(),
) -> None:
    """Run the daily maintenance tasks once.

    Exits with code 1 when any task failed; the other tasks still run.
    """
    settings = _load_settings(database_url)
    try:
        report = asyncio.run(_run_maintenance(settings, task or None))
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc
    except Exception as exc:
        console.print(f"[red]Maintenance run failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(report.model_dump(mode="json"))
    else:
        display_maintenance_report(console, report)

    if not report.success:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# renew
# ---------------------------------------------------------------------------


async def _run_renewals(settings: EngineSettings, lead_days: int | None):
    from meal_engine.clock import SystemClock
    from meal_engine.identity import SYSTEM_ACTOR
    from meal_engine.state.database import get_engine, get_session
    from meal_engine.subscriptions.provisioning import SubscriptionProvisioner

    engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    try:
        async with get_session(engine) as session:
            provisioner = SubscriptionProvisioner(session, SystemClock(), settings)
            return await provisioner.renew_due_groups(SYSTEM_ACTOR, lead_days)
    finally:
        await engine.dispose()


@app.command()
def renew(
    lead_days: int | None = typer.Option(
        None,
        "--lead-days",
        min=0,
        help="Renew groups whose renewal date is within this many days (default MEAL_RENEWAL_LEAD_DAYS).",
    ),
    database_url: str | None = _database_url_option(),
) -> None:
    """Provision the next cycle and invoice for every group due for renewal."""
    settings = _load_settings(database_url)
    try:
        report = asyncio.run(_run_renewals(settings, lead_days))
    except Exception as exc:
        console.print(f"[red]Renewal sweep failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(report.model_dump(mode="json"))
    else:
        display_renewal_report(console, report, settings.renewal_lead_days if lead_days is None else lead_days)

    if report.failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind the API server to."),
    port: int = typer.Option(8000, "--port", "-p", help="API server port."),
    reload: bool = typer.Option(False, "--reload", help="Restart on source changes (development only)."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    console.print(f"[bold]Serving mealcycle API on[/bold] http://{host}:{port}")
    uvicorn.run("meal_api.main:app", host=host, port=port, reload=reload, log_level="info")
