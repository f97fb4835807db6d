"""CLI commands using Click framework."""

import logging
import sys
from datetime import timezone
from typing import Optional

import click
import psycopg2
from rich.console import Console
from rich.logging import RichHandler

from konkurs_cli import kommuner as kommune_reference
from konkurs_cli.db import check_connection
from konkurs_cli.schema import get_schema_status, require_tables
from konkurs_cli.render import (
    console,
    print_error,
    print_success,
    print_warning,
    print_info,
    render_table,
    render_schema_status,
    render_run_stats,
    render_coverage_report,
    render_plan,
    render_execution_result,
    render_address_history,
)
from konkurs_cli.registry.brreg_client import BrregClient, RegistryClientError, get_brreg_config
from konkurs_cli.registry.collector import (
    MAX_WORKERS,
    SCOPES,
    SCOPE_ALL,
    SCOPE_KOMMUNE,
    BulkCollector,
    ProgressEvent,
    get_collector_workers,
    run_collection,
)
from konkurs_cli.registry.gaps import PlanProgress, analyze_gaps, create_plan, execute_plan
from konkurs_cli.registry.memory_store import InMemoryRepository
from konkurs_cli.registry.models import AddressKind, PriorityTier
from konkurs_cli.registry.storage import PostgresRepository, RepositoryError, create_registry_tables

logger = logging.getLogger(__name__)

DATE_FORMATS = ["%Y-%m-%d"]

# Errors that stop a command before any work is done
SETUP_ERRORS = (ValueError, RuntimeError, RepositoryError, psycopg2.Error)


def setup_logging(verbose: bool = False) -> None:
    """Route log records through Rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )


def _fail(message: str) -> None:
    print_error(message)
    sys.exit(1)


def _validate_kommune(ctx, param, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    number = value.strip().zfill(4)
    if not (number.isdigit() and len(number) == 4):
        raise click.BadParameter(f"'{value}' is not a four-digit kommune number")
    return number


def _open_repository(dry_run: bool = False, workers: int = 1):
    if dry_run:
        return InMemoryRepository()
    require_tables()
    return PostgresRepository(max_connections=workers + 1)


def _print_collection_progress(event: ProgressEvent) -> None:
    if event.event != "kommune_finished" or event.stats is None:
        return
    stats = event.stats
    icon = "[green]✓[/green]" if stats.success else "[red]✗[/red]"
    console.print(
        f"  {icon} {stats.kommune_number} {stats.kommune_name}: "
        f"{stats.seen} seen, {stats.new} new, {stats.moved} moved, {stats.errors} errors"
    )


@click.group()
@click.version_option(version="0.1.0", prog_name="konkurs-cli")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose):
    """Konkurs CLI - Business Registry Collection Tool.

    Collects Norwegian registry entities per kommune, keeps their address
    history consistent and plans backfills of coverage gaps.
    """
    setup_logging(verbose)


# =============================================================================
# Database Commands
# =============================================================================

@cli.command("status")
def status():
    """Show database connection and schema status."""
    ok, detail = check_connection()
    if not ok:
        _fail(f"Cannot connect to database: {detail}")

    console.print(f"[dim]{detail}[/dim]")
    try:
        schema_status = get_schema_status()
        statistics = None
        if schema_status.ready:
            repository = PostgresRepository()
            try:
                statistics = repository.get_statistics()
            finally:
                repository.close()
        render_schema_status(schema_status, statistics)
    except Exception as e:
        _fail(f"Failed to check schema status: {e}")


@cli.command("init-schema")
def init_schema():
    """Create collection tables (idempotent) and seed kommuner.

    Creates the following tables if they don't exist:
    - kommuner (municipality reference data)
    - companies (one row per organization number)
    - address_history (valid-time address intervals)
    - sync_watermarks (latest sync and resume cursor per kommune)
    - sync_runs (log of completed kommune collections)
    """
    try:
        console.print()
        print_info("Creating collection tables...")

        created = create_registry_tables()
        if created:
            print_success(f"Created tables: {', '.join(created)}")
        else:
            print_info("All collection tables already exist.")

        repository = PostgresRepository()
        try:
            seeded = repository.seed_kommuner(kommune_reference.get_all_kommuner())
        finally:
            repository.close()
        print_success(f"Seeded {seeded} kommuner.")
    except Exception as e:
        _fail(f"Failed to create collection tables: {e}")


# =============================================================================
# Reference Commands
# =============================================================================

@cli.command("kommuner")
@click.option("--priority", "-p", type=click.Choice([t.value for t in PriorityTier]),
              help="Only kommuner of this priority tier")
def kommuner(priority):
    """List known kommuner and their collection priority."""
    if priority:
        items = kommune_reference.get_kommuner_by_priority(PriorityTier(priority))
    else:
        items = kommune_reference.sort_by_priority(kommune_reference.get_all_kommuner())

    rows = [
        {
            "number": k.number,
            "name": k.name,
            "county": k.county,
            "region": k.region,
            "priority": k.priority.value,
            "estimate": kommune_reference.estimate_entities(k),
        }
        for k in items
    ]
    render_table(
        [
            ("number", "Number"),
            ("name", "Name"),
            ("county", "County"),
            ("region", "Region"),
            ("priority", "Priority"),
            ("estimate", "Est. entities"),
        ],
        rows,
        title=f"Kommuner ({len(rows)})",
    )
    console.print(
        f"[dim]Estimated entities across all kommuner: "
        f"{kommune_reference.estimate_total_companies():,}[/dim]"
    )


# =============================================================================
# Collection Commands
# =============================================================================

@cli.command("collect")
@click.option("--scope", "-s", type=click.Choice(SCOPES), default=SCOPE_ALL,
              help="Which kommuner to collect")
@click.option("--kommune", "-k", "kommune_number", callback=_validate_kommune,
              help="Kommune number (scope 'kommune')")
@click.option("--since", type=click.DateTime(formats=DATE_FORMATS),
              help="Only entities registered on or after this date")
@click.option("--until", type=click.DateTime(formats=DATE_FORMATS),
              help="Only entities registered on or before this date")
@click.option("--incremental", is_flag=True,
              help="Start each kommune the day after its last covered day")
@click.option("--workers", "-w", type=click.IntRange(1, MAX_WORKERS),
              help="Concurrent kommune streams (default: COLLECTOR_WORKERS or 1)")
@click.option("--dry-run", is_flag=True, help="Collect into memory without touching the database")
def collect(scope, kommune_number, since, until, incremental, workers, dry_run):
    """Collect entities from the registry and reconcile address history."""
    if kommune_number and scope == SCOPE_ALL:
        scope = SCOPE_KOMMUNE

    try:
        workers = workers or get_collector_workers()
        repository = _open_repository(dry_run, workers)
    except SETUP_ERRORS as e:
        _fail(str(e))

    client = BrregClient()
    try:
        if dry_run:
            print_info("Dry run: results are kept in memory only.")
        run = run_collection(
            repository,
            client,
            scope=scope,
            kommune_number=kommune_number,
            since=since.date() if since else None,
            until=until.date() if until else None,
            incremental=incremental,
            workers=workers,
            progress=_print_collection_progress,
        )
    except ValueError as e:
        _fail(str(e))
    finally:
        client.close()
        repository.close()

    console.print()
    render_run_stats(run)
    if run.errors:
        print_warning(
            f"{len(run.failed_kommuner)} kommuner did not complete; "
            f"their watermarks were not advanced."
        )


@cli.command("coverage")
@click.argument("kommune_number", callback=_validate_kommune)
def coverage(kommune_number):
    """Show sync coverage and gaps for a kommune."""
    try:
        repository = _open_repository()
        try:
            report = analyze_gaps(kommune_number, repository)
        finally:
            repository.close()
    except SETUP_ERRORS as e:
        _fail(str(e))

    render_coverage_report(report)


@cli.command("plan")
@click.argument("kommune_number", callback=_validate_kommune)
def plan(kommune_number):
    """Create a backfill plan for a kommune's coverage gaps."""
    try:
        config = get_brreg_config()
        repository = _open_repository()
        try:
            backfill_plan = create_plan(
                kommune_number,
                repository,
                page_size=config.page_size,
                requests_per_second=config.requests_per_second,
            )
        finally:
            repository.close()
    except SETUP_ERRORS as e:
        _fail(str(e))

    render_plan(backfill_plan)


@cli.command("backfill")
@click.argument("kommune_number", callback=_validate_kommune)
@click.option("--yes", "-y", is_flag=True, help="Execute without confirmation")
def backfill(kommune_number, yes):
    """Plan and execute a backfill of a kommune's coverage gaps."""
    try:
        config = get_brreg_config()
        repository = _open_repository()
    except SETUP_ERRORS as e:
        _fail(str(e))

    client = BrregClient(config=config)
    try:
        backfill_plan = create_plan(
            kommune_number,
            repository,
            page_size=config.page_size,
            requests_per_second=config.requests_per_second,
        )
        render_plan(backfill_plan)

        if not backfill_plan.phases:
            print_info("Nothing to backfill.")
            return
        if not yes and not click.confirm("Execute this plan?", default=False):
            print_info("Backfill cancelled.")
            return

        def on_progress(progress: PlanProgress):
            if progress.result is None:
                console.print(
                    f"[cyan]Phase {progress.phase}/{progress.total_phases}:[/cyan] {progress.description}"
                )

        collector = BulkCollector(repository, client)
        result = execute_plan(backfill_plan, collector, progress_callback=on_progress)
    except SETUP_ERRORS + (RegistryClientError,) as e:
        _fail(f"Backfill failed: {e}")
    finally:
        client.close()
        repository.close()

    console.print()
    render_execution_result(result)
    if result.success:
        print_success("Backfill complete.")
    else:
        print_warning("Backfill finished with incomplete phases; run it again to retry them.")


@cli.command("history")
@click.argument("organization_number")
@click.option("--kind", type=click.Choice([k.value for k in AddressKind]),
              help="Only this address kind")
@click.option("--at", "valid_at", type=click.DateTime(formats=DATE_FORMATS),
              help="Only rows valid on this date")
def history(organization_number, kind, valid_at):
    """Show a company's address history."""
    organization_number = organization_number.replace(" ", "")
    try:
        repository = _open_repository()
        try:
            company = repository.get_company(organization_number)
            rows = repository.get_address_history(
                organization_number,
                kind=AddressKind(kind) if kind else None,
                valid_at=valid_at.replace(tzinfo=timezone.utc) if valid_at else None,
            )
        finally:
            repository.close()
    except SETUP_ERRORS as e:
        _fail(str(e))

    if company is None:
        _fail(f"Company {organization_number} not found.")
    render_address_history(company, rows)


if __name__ == "__main__":
    cli()
