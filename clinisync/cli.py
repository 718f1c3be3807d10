"""Command Line Interface for the clinic sync engine.

Typer commands for preloading the snapshot, running a sync, inspecting the
sync cursor, querying one patient and serving the HTTP API.
"""

import json

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from clinisync.infrastructure.logging_config import setup_logging
from clinisync.infrastructure.settings import APP_NAME, APP_VERSION, settings
from clinisync.main import Services, build_services, initialize_storage, shutdown

app = typer.Typer(
    name="clinisync",
    help="ClinicSync: legacy clinic data sync and eligibility engine",
    add_completion=False
)
console = Console()


def create_services_cli(verbose: bool = False) -> Services:
    """Build services and prepare storage (CLI wrapper)."""
    log_config = settings.config.logging
    setup_logging(
        use_json=log_config.json_format,
        log_level="DEBUG" if verbose else log_config.level,
        log_file=log_config.file,
    )
    try:
        services = build_services(settings.config)
        initialize_storage(services)
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to initialize services: {str(e)}")
        raise typer.Exit(code=1)
    return services


def _preload_with_progress(services: Services) -> None:
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console
    ) as progress:
        task = progress.add_task("Preloading snapshot...", total=100)
        for event in services.record_store.iter_preload():
            progress.update(task, completed=event.percentage, description=event.message)

    generation = services.record_store.generation
    console.print(f"[green]✓[/green] Generation {generation.version}: {generation.record_count:,} records")
    for table in generation.failed_tables:
        console.print(f"[yellow]⚠[/yellow] {table} could not be loaded; queries will read it from the source")


@app.command()
def preload(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging")) -> None:
    """Load the configured legacy tables into a snapshot and report per-table progress."""
    services = create_services_cli(verbose)
    try:
        _preload_with_progress(services)
    finally:
        shutdown(services)


@app.command()
def sync(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging")) -> None:
    """Run one lab sync (initial import when the store is empty, incremental otherwise).

    Examples:
        clinisync sync
        clinisync sync --verbose
    """
    services = create_services_cli(verbose)
    try:
        with console.status("[bold green]Synchronizing lab results..."):
            report = services.coordinator.run()

        summary_table = Table(show_header=False, box=None, padding=(0, 2))
        summary_table.add_row("Outcome:", report.outcome)
        summary_table.add_row("Mode:", report.mode or "-")
        summary_table.add_row("Batches:", f"{report.batches:,}")
        summary_table.add_row("Records merged:", f"{report.records:,}")
        summary_table.add_row("Records skipped:", f"{report.skipped_records:,}")
        summary_table.add_row("Patients refreshed:", f"{report.affected_patients:,}")
        summary_table.add_row("Cursor:", report.cursor_date or "-")
        console.print(summary_table)

        if report.outcome == "failed":
            console.print(f"\n[red]✗[/red] Sync failed: {report.error}")
            raise typer.Exit(code=1)
        console.print("\n[green]✓[/green] Sync completed")
    finally:
        shutdown(services)


@app.command()
def status() -> None:
    """Show the persisted sync cursor."""
    services = create_services_cli()
    try:
        cursor = services.coordinator.status()
        info_table = Table(show_header=False, box=None, padding=(0, 2))
        info_table.add_row("Last date synced:", cursor.last_date_synced or "-")
        info_table.add_row("Last run status:", cursor.last_run_status.value if cursor.last_run_status else "-")
        info_table.add_row("Started at:", str(cursor.last_run_started_at or "-"))
        info_table.add_row("Finished at:", str(cursor.last_run_finished_at or "-"))
        if cursor.last_run_error:
            info_table.add_row("Error:", f"[red]{cursor.last_run_error}[/red]")
        console.print(info_table)
    finally:
        shutdown(services)


@app.command()
def query(
    patient_key: str = typer.Argument(..., help="Patient key (zero-padded to 7 digits)"),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON"),
) -> None:
    """Preload the snapshot and print one patient's eligibility and action list."""
    services = create_services_cli()
    try:
        services.record_store.preload()
        result = services.query_service.query_patient(patient_key)
        if result.is_failure():
            console.print(f"[red]✗[/red] {result.error_type}: {result.error}")
            raise typer.Exit(code=1)

        patient = result.value
        if as_json:
            console.print_json(json.dumps(patient.model_dump(mode="json"), ensure_ascii=False))
            return

        if patient.demographics is None:
            console.print(f"[yellow]⚠[/yellow] Patient {patient.patient_key} not found")
        else:
            console.print(f"[bold blue]{patient.demographics.name}[/bold blue] ({patient.patient_key})")
            console.print(f"[dim]Birth date:[/dim] {patient.demographics.birth_date_display or '-'}")

        rules_table = Table(title="Eligibility", header_style="bold")
        rules_table.add_column("Rule", style="cyan")
        rules_table.add_column("Eligible")
        rules_table.add_column("Last event")
        rules_table.add_column("Reason")
        for item in patient.eligibility:
            rules_table.add_row(
                item.label or item.rule_id,
                "[green]yes[/green]" if item.eligible else "no",
                item.last_event_date or "-",
                item.reason_code.value,
            )
        console.print(rules_table)

        actions_table = Table(title="Action list", header_style="bold")
        actions_table.add_column("Priority", justify="right")
        actions_table.add_column("Title")
        actions_table.add_column("Message")
        for action in patient.action_list:
            actions_table.add_row(str(action.priority), action.title, action.message)
        console.print(actions_table)

        if patient.degraded_tables:
            console.print(f"[yellow]⚠[/yellow] Degraded tables: {', '.join(patient.degraded_tables)}")
    finally:
        shutdown(services)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
) -> None:
    """Serve the HTTP query API with uvicorn."""
    import uvicorn
    uvicorn.run("clinisync.api.main:app", host=host, port=port, log_level="info")


@app.command()
def info() -> None:
    """Display system information and configuration."""
    config = settings.config
    console.print("[bold blue]System Information[/bold blue]\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Database Type:", config.database.db_type)
    info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Source Root:", config.source.root)
    info_table.add_row("Source Encoding:", config.source.encoding)
    info_table.add_row("Preload Tables:", ", ".join(config.preload.tables))
    info_table.add_row("Preload Window:", f"{config.preload.retention_years} years")
    info_table.add_row("Lab Item Map:", config.labs.item_map_path or "built-in")
    info_table.add_row("Sync Batch Size:", str(config.sync.batch_size))
    info_table.add_row("Sync Interval:", f"{config.sync.interval_minutes:g} minutes")

    console.print(info_table)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{APP_NAME} v{APP_VERSION}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=version_callback, is_eager=True, help="Show version information"
    )
) -> None:
    """ClinicSync: legacy clinic data sync and eligibility engine."""


if __name__ == "__main__":
    app()
