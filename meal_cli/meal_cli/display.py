"""Rich output formatting for the mealctl CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from meal_engine.models.results import MaintenanceReport, RenewalReport
    from meal_engine.scheduling.cycles import Cycle


def _outcome(success: bool) -> str:
    return "[green]OK[/green]" if success else "[red]FAILED[/red]"


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------

_POSITION_STYLES = {"current": "[bold green]{}[/bold green]", "next": "[cyan]{}[/cyan]", "past": "[dim]{}[/dim]"}


def display_cycles(console: Console, cycles: list[Cycle], positions: list[str] | None = None) -> None:
    """Render consecutive billing cycles as a table.

    When *positions* is given, a column labels each cycle past, current,
    next or future.
    """
    table = Table(title=f"{cycles[0].period_type.value.capitalize()} cycles", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Start", style="bold")
    table.add_column("End")
    table.add_column("Renewal")
    table.add_column("Days", justify="right")
    if positions is not None:
        table.add_column("Position")

    for index, cycle in enumerate(cycles, start=1):
        row = [
            str(index),
            cycle.cycle_start.isoformat(),
            cycle.cycle_end.isoformat(),
            cycle.renewal_date.isoformat(),
            str(cycle.length_days),
        ]
        if positions is not None:
            position = positions[index - 1]
            row.append(_POSITION_STYLES.get(position, "{}").format(position))
        table.add_row(*row)
    console.print(table)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def display_maintenance_report(console: Console, report: MaintenanceReport) -> None:
    """Render per-task outcomes of a daily maintenance run.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    report:
        The report returned by the scheduler.
    """
    table = Table(title="Daily maintenance")
    table.add_column("Task", style="bold")
    table.add_column("Outcome")
    table.add_column("Details")

    for task, outcome in report.results.items():
        if outcome.success:
            details = ", ".join(f"{k}={v}" for k, v in (outcome.result or {}).items() if not isinstance(v, list))
        else:
            details = f"[red]{outcome.error}[/red]"
        table.add_row(task, _outcome(outcome.success), details)
    console.print(table)

    summary = report.summary
    console.print(
        f"{summary.successful}/{summary.total_tasks} task(s) succeeded"
        + (f", [red]{summary.failed} failed[/red]" if summary.failed else "")
    )


def display_renewal_report(console: Console, report: RenewalReport, lead_days: int) -> None:
    lines = [
        f"[bold]Lead days:[/bold]            {lead_days}",
        f"[bold]Groups examined:[/bold]      {report.examined}",
        f"[bold]Cycles provisioned:[/bold]   {report.provisioned}",
        f"[bold]Already provisioned:[/bold]  {report.already_provisioned}",
        f"[bold]Failed:[/bold]               {report.failed}",
    ]
    if report.failed_group_ids:
        lines.append(f"[red]Failed groups: {', '.join(report.failed_group_ids)}[/red]")
    console.print(
        Panel(
            "\n".join(lines),
            title="Renewals",
            border_style="red" if report.failed else "blue",
        )
    )
