"""Rendering utilities for terminal output."""

from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box

from konkurs_cli.registry.collector import CollectorState, KommuneStats, RunStats
from konkurs_cli.registry.gaps import BackfillPlan, CoverageReport, ExecutionResult, GapPriority
from konkurs_cli.registry.models import AddressHistoryRecord, StoredCompany


# Global console instance
console = Console()

_PRIORITY_STYLES = {
    GapPriority.CRITICAL: "bold red",
    GapPriority.HIGH: "yellow",
    GapPriority.MEDIUM: "cyan",
    GapPriority.LOW: "dim",
}


def print_error(message: str):
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str):
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str):
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def print_info(message: str):
    """Print an info message."""
    console.print(f"[bold blue]Info:[/bold blue] {message}")


def print_section_header(title: str):
    """Print a section header."""
    console.print()
    console.print(f"[bold cyan]═══ {title} ═══[/bold cyan]")
    console.print()


def _fmt(value: Any) -> str:
    if value is None or value == "":
        return "—"
    if hasattr(value, "isoformat"):
        return value.isoformat(sep=" ", timespec="seconds") if hasattr(value, "hour") else value.isoformat()
    return str(value)


def render_table(
    columns: List[Tuple[str, str]],
    rows: List[Dict[str, Any]],
    title: Optional[str] = None,
    show_row_numbers: bool = False,
):
    """Render a formatted table.

    Args:
        columns: List of (key, header_label) tuples.
        rows: List of row dictionaries.
        title: Optional table title.
        show_row_numbers: If True, show row numbers.
    """
    table = Table(
        title=title,
        box=box.ROUNDED,
        header_style="bold magenta",
        row_styles=["", "dim"],
    )

    if show_row_numbers:
        table.add_column("#", justify="right", style="dim")

    for key, header in columns:
        table.add_column(header, overflow="fold")

    for i, row in enumerate(rows, 1):
        values = []
        if show_row_numbers:
            values.append(str(i))
        for key, _ in columns:
            values.append(_fmt(row.get(key)))
        table.add_row(*values)

    console.print(table)


def _render_key_value_pairs(pairs: List[Tuple[str, Any]]):
    """Render key-value pairs with aligned formatting."""
    max_key_len = max(len(k) for k, _ in pairs) if pairs else 0
    for key, value in pairs:
        console.print(f"  [cyan]{key:>{max_key_len}}:[/cyan] {_fmt(value)}")


def render_schema_status(status, statistics: Optional[Dict[str, int]] = None):
    """Render schema status report.

    Args:
        status: SchemaStatus object.
        statistics: Optional row counts from the repository.
    """
    console.print()
    console.print("[bold]Database Schema Status[/bold]")
    console.print()

    console.print("[cyan]Collection Tables:[/cyan]")
    for t in status.required_tables:
        icon = "[green]✓[/green]" if t.exists else "[red]✗[/red]"
        console.print(f"  {icon} {t.full_name}")

    console.print()
    console.print("[cyan]Reference Tables:[/cyan]")
    for t in status.reference_tables:
        icon = "[green]✓[/green]" if t.exists else "[dim]○[/dim]"
        console.print(f"  {icon} {t.full_name}")

    console.print()
    if status.ready:
        console.print("[green]All collection tables are ready.[/green]")
    else:
        console.print("[yellow]Collection tables are not yet created.[/yellow]")
        console.print("[dim]Run: konkurs-cli init-schema[/dim]")

    if statistics:
        print_section_header("Stored Data")
        _render_key_value_pairs([
            ("Companies", statistics.get("companies")),
            ("Bankrupt", statistics.get("bankrupt")),
            ("Address rows", statistics.get("address_rows")),
            ("Current addresses", statistics.get("current_addresses")),
            ("Synced kommuner", statistics.get("synced_kommuner")),
        ])


def _kommune_status(stats: KommuneStats) -> str:
    if stats.success:
        return "[green]ok[/green]"
    if stats.ceiling_reached and stats.state != CollectorState.FAILED:
        return "[yellow]ceiling[/yellow]"
    if stats.error:
        return "[red]failed[/red]"
    return "[yellow]partial[/yellow]"


def render_run_stats(run: RunStats, title: str = "Collection Run"):
    """Render per-kommune and total statistics of a collection run.

    Args:
        run: RunStats from a collection.
        title: Table title.
    """
    table = Table(
        title=title,
        box=box.ROUNDED,
        header_style="bold magenta",
    )
    table.add_column("Kommune", style="cyan")
    table.add_column("Name")
    table.add_column("Seen", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Moved", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Pages", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Status")

    for k in run.kommuner:
        table.add_row(
            k.kommune_number,
            k.kommune_name or "—",
            str(k.seen),
            str(k.new),
            str(k.updated),
            str(k.moved),
            str(k.unchanged),
            f"[red]{k.errors}[/red]" if k.errors else "0",
            str(k.pages),
            f"{k.elapsed_seconds:.1f}s",
            _kommune_status(k),
        )

    console.print(table)
    console.print(
        f"Processed [bold]{run.processed}[/bold] of {run.seen} entities "
        f"([green]{run.new} new[/green], {run.updated} updated, "
        f"[yellow]{run.moved} moved[/yellow]), "
        f"[red]{run.errors} errors[/red] in {run.elapsed_seconds:.1f}s"
    )

    for k in run.kommuner:
        if k.error:
            print_warning(f"{k.kommune_number}: {k.error}")
    if run.skipped:
        print_warning(f"Stopped before {len(run.skipped)} kommuner: {', '.join(run.skipped)}")


def render_coverage_report(report: CoverageReport):
    """Render coverage percentage and gap list of a kommune."""
    color = "green" if report.coverage_percent >= 95 else "yellow" if report.coverage_percent >= 50 else "red"
    console.print(Panel(
        f"[bold {color}]{report.coverage_percent:.1f}%[/bold {color}] covered "
        f"({report.covered_days}/{report.total_days} days)\n"
        f"[dim]{report.start.isoformat()} .. {report.end.isoformat()} · "
        f"last synced {_fmt(report.last_synced_at)}[/dim]",
        title=f"Coverage: kommune {report.kommune_number}",
        border_style="cyan",
    ))

    if not report.gaps:
        console.print("[green]No gaps.[/green]")
        return

    table = Table(box=box.ROUNDED, header_style="bold magenta")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Days", justify="right")
    table.add_column("Priority")
    table.add_column("Est. records", justify="right")
    for gap in report.gaps:
        style = _PRIORITY_STYLES[gap.priority]
        table.add_row(
            gap.start.isoformat(),
            gap.end.isoformat(),
            str(gap.size_days),
            f"[{style}]{gap.priority.value}[/{style}]",
            str(gap.estimated_records),
        )
    console.print(table)


def render_plan(plan: BackfillPlan):
    """Render a backfill plan."""
    console.print(Panel(
        f"Strategy: [bold]{plan.strategy.value}[/bold]\n"
        f"Missing: {plan.report.missing_days} days · scheduled: {plan.scheduled_days} days\n"
        f"Estimated: {plan.total_records} records · {plan.total_api_calls} API calls · "
        f"{plan.estimated_seconds:.0f}s",
        title=f"Backfill plan: kommune {plan.kommune_number}",
        border_style="blue",
    ))

    if plan.phases:
        table = Table(box=box.ROUNDED, header_style="bold magenta")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Window")
        table.add_column("Days", justify="right")
        table.add_column("Priority")
        table.add_column("Records", justify="right")
        table.add_column("API calls", justify="right")
        for phase in plan.phases:
            style = _PRIORITY_STYLES[phase.priority]
            table.add_row(
                str(phase.number),
                f"{phase.start.isoformat()} .. {phase.end.isoformat()}",
                str(phase.size_days),
                f"[{style}]{phase.priority.value}[/{style}]",
                str(phase.estimated_records),
                str(phase.estimated_api_calls),
            )
        console.print(table)

    for note in plan.notes:
        console.print(f"[dim]• {note}[/dim]")


def render_execution_result(result: ExecutionResult):
    """Render per-phase outcome of an executed plan."""
    table = Table(
        title=f"Backfill: kommune {result.kommune_number}",
        box=box.ROUNDED,
        header_style="bold magenta",
    )
    table.add_column("#", justify="right", style="dim")
    table.add_column("Window")
    table.add_column("Seen", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Status")
    for r in result.phase_results:
        table.add_row(
            str(r.phase.number),
            f"{r.phase.start.isoformat()} .. {r.phase.end.isoformat()}",
            str(r.seen),
            str(r.new),
            str(r.updated),
            str(r.errors),
            f"{r.duration_seconds:.1f}s",
            "[green]ok[/green]" if r.success else f"[red]{r.error or 'incomplete'}[/red]",
        )
    console.print(table)
    console.print(
        f"{result.phases_completed}/{result.total_phases} phases completed, "
        f"{result.total_seen} entities seen, {result.total_errors} errors"
    )


def render_address_history(
    company: Optional[StoredCompany],
    rows: List[AddressHistoryRecord],
):
    """Render a company and its address history."""
    if company:
        console.print(Panel(
            f"[bold]{company.name or company.organization_number}[/bold]\n"
            f"[dim]{company.legal_form or '—'} · {company.status.value}[/dim]",
            title=f"Org. no. {company.organization_number}",
            border_style="cyan",
        ))
        _render_key_value_pairs([
            ("Registered", company.registration_date),
            ("Address", company.current_address),
            ("Kommune", f"{company.current_kommune_number} {company.current_kommune_name}".strip()),
            ("Last synced", company.last_synced_at),
        ])

    print_section_header("Address History")
    if not rows:
        console.print("  [dim]No address history recorded.[/dim]")
        return

    table = Table(box=box.ROUNDED, header_style="bold magenta")
    table.add_column("Kind", style="cyan")
    table.add_column("Address", overflow="fold")
    table.add_column("Kommune")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Current")
    for row in rows:
        table.add_row(
            row.kind.value,
            row.address.format_oneline(),
            f"{row.address.municipality_code} {row.address.municipality_name}".strip() or "—",
            _fmt(row.valid_from),
            _fmt(row.valid_to),
            "[green]Yes[/green]" if row.is_current else "No",
        )
    console.print(table)
