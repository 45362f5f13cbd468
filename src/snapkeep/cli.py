"""Command-line interface for snapkeep.

Built with Typer for commands and Rich for output.
"""

import signal
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .backup.restore import RestoreMode
from .backup.schemas import RestoreStatus, RetentionPolicy
from .backup.service import BackupService
from .config import get_config
from .db.schemas import BackupKind, BackupStatus
from .errors import SnapkeepError
from .log import configure_logging

# Create the main app
app = typer.Typer(
    name="snapkeep",
    help="Snapshot, verify, and restore organisation data.",
    no_args_is_help=True,
)

# Create sub-apps for command groups
backup_app = typer.Typer(help="Create, inspect, verify, restore, and prune backups.")
app.add_typer(backup_app, name="backup")

integrity_app = typer.Typer(help="Live data consistency checks.")
app.add_typer(integrity_app, name="integrity")

# Rich console for pretty output
console = Console()

# Seconds serve waits for a running backup on shutdown
DRAIN_TIMEOUT = 120.0


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def get_service() -> BackupService:
    """Build the backup service from configuration."""
    config = get_config()
    problems = config.validate()
    if problems:
        for problem in problems:
            print_error(problem)
        raise typer.Exit(1)
    return BackupService.from_config(config)


def status_style(status: BackupStatus) -> str:
    """Rich style for a backup status."""
    return {
        BackupStatus.SUCCESS: "green",
        BackupStatus.FAILED: "red",
        BackupStatus.IN_PROGRESS: "yellow",
    }[status]


@app.callback()
def main_callback() -> None:
    """Configure logging before any command runs."""
    config = get_config()
    configure_logging(config.log_level, config.log_file)


# ============================================================================
# Backup Commands
# ============================================================================


@backup_app.command("create")
def backup_create(
    kind: BackupKind = typer.Option(BackupKind.FULL, "--kind", "-k", help="Backup kind"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Apply retention afterwards"),
) -> None:
    """Create a backup of the database, uploads, and configuration."""
    service = get_service()

    try:
        record = service.create_backup(kind)
    except SnapkeepError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if record.status == BackupStatus.SUCCESS:
        print_success(f"Backup created: {record.id}")
        console.print(f"[dim]Size: {record.size_human}, took {record.duration_ms} ms[/dim]")
        if record.integrity.verified:
            console.print(f"[dim]Checksum: {record.integrity.checksum}[/dim]")
        else:
            print_warning("Snapshot could not be sealed; it is stored unverified")
    else:
        print_error(f"Backup failed: {record.error}")
        raise typer.Exit(1)

    if cleanup:
        deleted = service.cleanup()
        console.print(f"[dim]Retention removed {deleted} old backup(s)[/dim]")


@backup_app.command("list")
def backup_list() -> None:
    """List backups, newest first."""
    service = get_service()
    records = service.list_backups()

    if not records:
        console.print("[dim]No backups found[/dim]")
        return

    table = Table(title="Backups", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Created", style="green")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Verified", justify="center")
    table.add_column("Size", justify="right")

    for record in records:
        style = status_style(record.status)
        table.add_row(
            record.id,
            record.timestamp.isoformat()[:19],
            record.kind.value,
            f"[{style}]{record.status.value}[/{style}]",
            "yes" if record.integrity.verified else "no",
            record.size_human if record.size_bytes is not None else "-",
        )

    console.print(table)


@backup_app.command("show")
def backup_show(
    backup_id: str = typer.Argument(..., help="Backup ID"),
) -> None:
    """Show details of one backup."""
    service = get_service()

    try:
        record = service.get_backup(backup_id)
    except SnapkeepError as e:
        print_error(str(e))
        raise typer.Exit(1)

    style = status_style(record.status)
    console.print(Panel(f"[bold]{record.id}[/bold]", style="magenta"))
    console.print(f"Created:  {record.timestamp.isoformat()}")
    console.print(f"Kind:     {record.kind.value}")
    console.print(f"Status:   [{style}]{record.status.value}[/{style}]")
    console.print(f"Size:     {record.size_human}")
    console.print(f"Duration: {record.duration_ms or 0} ms")
    console.print(f"Verified: {'yes' if record.integrity.verified else 'no'}")
    if record.integrity.checksum:
        console.print(f"Checksum: {record.integrity.checksum}")
    if record.artifacts:
        console.print("\n[bold]Artifacts:[/bold]")
        for artifact, filename in record.artifacts.items():
            console.print(f"  {artifact}: {filename}")
    if record.error:
        console.print(f"\n[red]Error: {record.error}[/red]")


@backup_app.command("verify")
def backup_verify(
    backup_id: str = typer.Argument(..., help="Backup ID"),
) -> None:
    """Re-check a backup against its recorded checksum."""
    service = get_service()

    try:
        result = service.verify_backup(backup_id)
    except SnapkeepError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if result.verified:
        print_success(f"Backup is intact (checksum {result.checksum})")
    else:
        print_error("Backup verification failed: snapshot is missing, empty, or altered")
        raise typer.Exit(1)


@backup_app.command("restore")
def backup_restore(
    backup_id: str = typer.Argument(..., help="Backup ID"),
    mode: RestoreMode = typer.Option(RestoreMode.REPLACE, "--mode", "-m", help="Database restore mode"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Restore the database, uploads, and configuration from a backup."""
    service = get_service()

    if mode == RestoreMode.REPLACE:
        console.print("[bold red]WARNING: This will replace all current data![/bold red]")

    if not force:
        confirm = typer.confirm(f"Restore {backup_id}?")
        if not confirm:
            console.print("[dim]Restore cancelled.[/dim]")
            return

    try:
        report = service.restore_backup(backup_id, mode)
    except SnapkeepError as e:
        print_error(str(e))
        raise typer.Exit(1)

    for outcome in report.outcomes:
        color = {
            RestoreStatus.RESTORED: "green",
            RestoreStatus.FAILED: "red",
            RestoreStatus.SKIPPED: "yellow",
        }[outcome.status]
        console.print(
            f"  {outcome.artifact.value}: [{color}]{outcome.status.value}[/{color}] {outcome.detail}"
        )

    if report.success:
        print_success("Restore completed!")
    else:
        print_error("Restore finished with problems")
        raise typer.Exit(1)


@backup_app.command("cleanup")
def backup_cleanup(
    daily: Optional[int] = typer.Option(None, "--daily", min=0, help="Days to keep every backup"),
    weekly: Optional[int] = typer.Option(None, "--weekly", min=0, help="Weeks to keep weekly backups"),
    monthly: Optional[int] = typer.Option(None, "--monthly", min=0, help="Months to keep monthly backups"),
) -> None:
    """Delete backups past the retention policy."""
    service = get_service()
    policy = service.policy
    policy = RetentionPolicy(
        daily_keep_days=policy.daily_keep_days if daily is None else daily,
        weekly_keep_weeks=policy.weekly_keep_weeks if weekly is None else weekly,
        monthly_keep_months=policy.monthly_keep_months if monthly is None else monthly,
    )

    deleted = service.cleanup(policy)
    print_success(f"Deleted {deleted} backup(s)")
    for error in service.retention.last_errors:
        print_warning(str(error))


@backup_app.command("reconcile")
def backup_reconcile() -> None:
    """Repair half-deleted backups and mark interrupted runs failed."""
    service = get_service()
    summary = service.reconcile()

    table = Table(title="Reconciliation", show_header=False)
    table.add_column("Item", style="cyan")
    table.add_column("Count", justify="right")
    for key, value in summary.items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


# ============================================================================
# Integrity Commands
# ============================================================================


@integrity_app.command("check")
def integrity_check(
    repair: bool = typer.Option(True, "--repair/--no-repair", help="Repair occupancy counters"),
) -> None:
    """Check the live database for orphaned records and inconsistencies."""
    service = get_service()
    report = service.run_integrity_check(repair=repair)

    status = "[bold green]PASSED[/bold green]" if report.passed else "[bold red]FAILED[/bold red]"
    console.print(Panel(f"[bold]Integrity Check: {status}[/bold]", style="magenta"))

    console.print(f"Orphaned records: {report.orphaned_records}")
    for relation, count in report.orphans.items():
        if count:
            console.print(f"  {relation}: {count}")
    console.print(f"Invalid statuses: {report.invalid_statuses}")
    console.print(f"Date violations:  {report.date_violations}")
    console.print(f"Stale counters:   {report.stale_counters}")
    console.print(f"Counters fixed:   {report.fixed_records}")
    if report.repair_error:
        print_warning(f"Repair failed: {report.repair_error}")

    if not report.passed:
        raise typer.Exit(1)


# ============================================================================
# Server Command
# ============================================================================


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(5000, "--port", "-p", help="Port"),
) -> None:
    """Serve the administrative backup API."""
    from loguru import logger

    from .api import run_server

    service = get_service()
    summary = service.reconcile()
    if any(summary.values()):
        logger.info("Startup reconciliation: {}", summary)

    def _shutdown(signum, frame):
        logger.info("Received signal {}, draining", signum)
        service.drain(timeout=DRAIN_TIMEOUT)
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    run_server(service, host=host, port=port)


# ============================================================================
# Version Command
# ============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"snapkeep version {__version__}")


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
