#!/usr/bin/env python3
"""
Reconciliation Control CLI - Command Line Interface for the reconciliation engine.

Provides commands for previewing and executing bulk user imports, retrying
failed rows, browsing and rolling back import history, and managing
scheduled imports.
"""

import json
import logging
import time
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from ..config import load_settings
from ..engine.errors import ReconciliationError
from ..engine.retry import unfixed_errors
from ..models import (
    Actor,
    ExecutionResult,
    FieldName,
    PreviewSummary,
    ScheduledImportConfig,
    UpsertOptions,
)
from ..notifications.notifier import build_notifier
from ..scheduler.scheduler import ImportScheduler
from ..scheduler.store import ScheduleStore
from ..service import ReconciliationService

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()


class ReconController:
    """Main controller for reconciliation engine operations."""

    def __init__(self, config_path: Optional[str] = None, operator: str = "cli"):
        """Initialize the controller from settings."""
        self.settings = load_settings(config_path)
        logging.getLogger().setLevel(self.settings.log_level.upper())

        self.service = ReconciliationService.from_settings(self.settings)
        self.actor = Actor(user_id=operator, user_name=operator)
        self._scheduler: Optional[ImportScheduler] = None

    @property
    def scheduler(self) -> ImportScheduler:
        if self._scheduler is None:
            self._scheduler = ImportScheduler(
                ScheduleStore(self.settings.schedules_path),
                self.service,
                notifier=build_notifier(self.settings.notification_webhook_url),
                interval_seconds=self.settings.scheduler_interval_seconds,
            )
        return self._scheduler


def upsert_options(func):
    """Attach the shared upsert option flags to a command."""
    options = [
        click.option('--create/--no-create', 'create_new', default=True, help='Create users not yet in the directory'),
        click.option('--update/--no-update', 'update_existing', default=True, help='Update users already in the directory'),
        click.option('--fields', help='Comma-separated fields to write on update (name and role are always written)'),
        click.option('--stop-on-error', is_flag=True, help='Abort the run on critical failures'),
        click.option('--quiet-skips', is_flag=True, help='Do not list skipped rows in the error output'),
        click.option('--auto-fix-passwords', is_flag=True, help='Derive compliant passwords for weak ones'),
        click.option('--batched', is_flag=True, help='Execute in batches of the policy batch size'),
        click.option('--batch-size', type=int, default=None, help='Execute in batches of this size'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_options(create_new, update_existing, fields, stop_on_error, quiet_skips, auto_fix_passwords, batched, batch_size):
    selected = frozenset(FieldName(f.strip()) for f in fields.split(',')) if fields else frozenset(FieldName)
    values = dict(
        create_new=create_new,
        update_existing=update_existing,
        selected_fields=selected,
        skip_on_error=not stop_on_error,
        continue_on_validation_error=quiet_skips,
        auto_fix_passwords=auto_fix_passwords,
        use_batching=batched or batch_size is not None,
        batch_size=batch_size,
    )
    return UpsertOptions(**values)


@click.group()
@click.option('--config', '-c', help='Path to configuration file')
@click.option('--operator', default='cli', help='Operator name recorded in the audit ledger')
@click.pass_context
def cli(ctx, config, operator):
    """Reconciliation Control CLI - bulk identity import and reconciliation"""
    ctx.ensure_object(dict)
    ctx.obj['controller'] = ReconController(config, operator)


@cli.command()
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@upsert_options
@click.pass_context
def preview(ctx, input_file, **option_flags):
    """Preview what importing a file would change."""
    controller = ctx.obj['controller']

    try:
        options = build_options(**option_flags)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    summary = controller.service.preview(
        Path(input_file).read_bytes(),
        file_name=Path(input_file).name,
        options=options,
        actor=controller.actor,
    )
    display_preview(summary)


@cli.command()
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@upsert_options
@click.option('--save-result', type=click.Path(dir_okay=False), help='Write the result as JSON for retry and error-report')
@click.pass_context
def execute(ctx, input_file, save_result, **option_flags):
    """Execute an import file against the directory."""
    controller = ctx.obj['controller']

    try:
        options = build_options(**option_flags)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    path = Path(input_file)
    console.print(f"[blue]Importing {path.name}[/blue]")
    result = controller.service.execute(path.read_bytes(), options=options, actor=controller.actor, file_name=path.name)
    display_result(result)

    if save_result:
        Path(save_result).write_text(result.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[blue]Result saved to {save_result}[/blue]")


@cli.command()
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--result', 'result_file', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Result JSON saved by execute --save-result')
@upsert_options
@click.pass_context
def retry(ctx, input_file, result_file, **option_flags):
    """Retry the recoverable failures of a previous execution with proposed fixes."""
    controller = ctx.obj['controller']

    try:
        options = build_options(**option_flags)
        previous = ExecutionResult.model_validate_json(Path(result_file).read_text(encoding="utf-8"))
    except (ValueError, ValidationError) as e:
        raise click.BadParameter(str(e)) from e

    if not previous.recoverable_errors:
        console.print("[yellow]The previous result has no recoverable errors to retry[/yellow]")
        return

    fixes = controller.service.propose_fixes(previous.recoverable_errors)
    manual = unfixed_errors(previous.recoverable_errors, fixes)
    console.print(f"[blue]Proposed fixes for {len(fixes)} rows; {len(manual)} errors need manual correction[/blue]")
    for error in manual:
        console.print(f"  - Row {error.row_identifier}: {error.error_message}")

    path = Path(input_file)
    result = controller.service.retry(
        path.read_bytes(),
        previous.recoverable_errors,
        fixes=fixes,
        options=options,
        actor=controller.actor,
        file_name=path.name,
        retry_of=previous.audit_log_id,
    )
    display_result(result)


@cli.command()
@click.option('--result', 'result_file', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Result JSON saved by execute --save-result')
@click.pass_context
def error_report(ctx, result_file):
    """Show a categorized error report for a saved result."""
    controller = ctx.obj['controller']

    result = ExecutionResult.model_validate_json(Path(result_file).read_text(encoding="utf-8"))
    report = controller.service.error_report(result)

    console.print("[bold blue]Error Report[/bold blue]")
    console.print(f"Recoverable errors: {report.total_recoverable_errors}")
    console.print(f"Critical errors: {report.total_critical_errors}")

    if report.error_categories:
        table = Table(title="Error Categories")
        table.add_column("Category", style="cyan")
        table.add_column("Count", style="magenta")
        for category, count in sorted(report.error_categories.items()):
            table.add_row(category, str(count))
        console.print(table)

    console.print(f"Auto-fixable rows: {', '.join(map(str, report.auto_fixable_rows)) or 'none'}")
    console.print(f"Rows needing manual fixes: {', '.join(map(str, report.manual_fix_rows)) or 'none'}")

    if report.recommendations:
        console.print("\n[bold]Recommendations[/bold]")
        for rec in report.recommendations:
            console.print(f"• {rec}")


@cli.command()
@click.option('--limit', default=None, type=int, help='Maximum number of entries (0 for all)')
@click.option('--include-previews', is_flag=True, help='Include preview entries')
@click.pass_context
def history(ctx, limit, include_previews):
    """Show the import history, newest first."""
    controller = ctx.obj['controller']

    entries = controller.service.get_history(limit=limit, include_previews=include_previews)
    if not entries:
        console.print("[yellow]No import history found[/yellow]")
        return

    table = Table(title=f"Import History ({len(entries)})")
    table.add_column("ID", style="cyan")
    table.add_column("Timestamp", style="green")
    table.add_column("Operation", style="yellow")
    table.add_column("User", style="blue")
    table.add_column("File", style="magenta")
    table.add_column("Summary")
    table.add_column("Rollback", style="red")

    for entry in entries:
        details = entry.details
        if entry.operation.value == "rollback":
            file_name = details.original_file_name
            summary = f"{details.rolled_back_rows} rows reverted, {len(details.conflicts)} conflicts"
        elif entry.operation.value == "preview":
            file_name = details.file_name
            summary = f"{details.valid_rows} valid, {details.invalid_rows} invalid"
        else:
            file_name = details.file_name
            summary = f"{details.created} created, {details.updated} updated, {details.failed} failed"

        table.add_row(
            entry.id,
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.operation.value,
            entry.user_name,
            file_name,
            summary,
            "✓" if entry.can_rollback else "",
        )

    console.print(table)


@cli.command()
@click.argument('audit_log_id')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def rollback(ctx, audit_log_id, yes):
    """Roll back a completed import."""
    controller = ctx.obj['controller']

    if not yes and not Confirm.ask(f"Roll back import {audit_log_id}?"):
        console.print("[yellow]Rollback cancelled[/yellow]")
        return

    result = controller.service.rollback(audit_log_id, actor=controller.actor)
    if result.success:
        console.print(f"[green]✓ Rolled back {result.rolled_back_rows} rows[/green]")
    else:
        console.print(f"[red]✗ Rollback failed: {result.error}[/red]")

    if result.conflicts:
        console.print(f"[yellow]Conflicts ({len(result.conflicts)}):[/yellow]")
        for conflict in result.conflicts:
            console.print(f"  - Row {conflict.row_identifier} ({conflict.user_id}): {conflict.reason}")


@cli.command()
@click.pass_context
def stats(ctx):
    """Show import statistics."""
    controller = ctx.obj['controller']

    statistics = controller.service.statistics()

    console.print("[bold blue]Import Statistics[/bold blue]")
    console.print(f"Total Imports: {statistics.total_imports}")
    console.print(f"Rows Processed: {statistics.total_rows_processed}")
    console.print(f"Created: {statistics.total_created}")
    console.print(f"Updated: {statistics.total_updated}")
    console.print(f"Failed: {statistics.total_failures}")
    console.print(f"Average Execution Time: {statistics.average_execution_time_ms:.0f} ms")
    if statistics.largest_import_file:
        console.print(f"Largest Import: {statistics.largest_import_file} ({statistics.largest_import_rows} rows)")
    console.print(
        f"\nActivity: {statistics.last_24_hours} in 24h, "
        f"{statistics.last_7_days} in 7d, {statistics.last_30_days} in 30d"
    )


@cli.group()
def schedules():
    """Manage scheduled imports."""


@schedules.command('list')
@click.pass_context
def list_schedules(ctx):
    """List scheduled imports."""
    controller = ctx.obj['controller']

    configs = controller.scheduler.list_schedules()
    if not configs:
        console.print("[yellow]No scheduled imports configured[/yellow]")
        return

    table = Table(title=f"Scheduled Imports ({len(configs)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Cadence", style="yellow")
    table.add_column("Source", style="blue")
    table.add_column("Status", style="magenta")
    table.add_column("Last Run")
    table.add_column("Next Run")

    for config in configs:
        table.add_row(
            config.id,
            config.name,
            f"{config.schedule.frequency.value} {config.schedule.time} {config.schedule.timezone}",
            f"{config.source.type.value}: {config.source.url}",
            config.status.value,
            config.last_run.strftime("%Y-%m-%d %H:%M") if config.last_run else "never",
            config.next_run.strftime("%Y-%m-%d %H:%M") if config.next_run else "-",
        )

    console.print(table)


@schedules.command('create')
@click.argument('config_file', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def create_schedule(ctx, config_file):
    """Create a scheduled import from a JSON definition."""
    controller = ctx.obj['controller']

    try:
        with open(config_file, encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("created_by", controller.actor.user_id)
        config = ScheduledImportConfig.model_validate(data)
    except (OSError, ValueError, ValidationError) as e:
        console.print(f"[red]Invalid schedule definition: {e}[/red]")
        raise SystemExit(1) from e

    config = controller.scheduler.create_schedule(config)
    console.print(f"[green]✓ Created schedule {config.id}, next run {config.next_run}[/green]")


@schedules.command('run')
@click.argument('config_id')
@click.pass_context
def run_schedule(ctx, config_id):
    """Run a scheduled import now."""
    controller = ctx.obj['controller']

    try:
        summary = controller.scheduler.execute_now(config_id)
    except ReconciliationError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1) from e

    if summary is None:
        console.print(f"[yellow]Schedule {config_id} is already running[/yellow]")
        return

    style = "green" if summary.success else "red"
    console.print(f"[{style}]{summary.message}[/{style}]")
    for error in summary.errors:
        console.print(f"  - {error}")


@schedules.command('toggle')
@click.argument('config_id')
@click.pass_context
def toggle_schedule(ctx, config_id):
    """Enable or disable a scheduled import."""
    controller = ctx.obj['controller']

    try:
        config = controller.scheduler.toggle_enabled(config_id)
    except ReconciliationError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1) from e

    console.print(f"Schedule '{config.name}' is now {config.status.value}")


@schedules.command('delete')
@click.argument('config_id')
@click.pass_context
def delete_schedule(ctx, config_id):
    """Delete a scheduled import."""
    controller = ctx.obj['controller']

    try:
        controller.scheduler.delete_schedule(config_id)
    except ReconciliationError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1) from e

    console.print(f"[green]✓ Deleted schedule {config_id}[/green]")


@cli.command()
@click.pass_context
def scheduler(ctx):
    """Run the import scheduler in the foreground."""
    controller = ctx.obj['controller']

    controller.scheduler.start()
    console.print(f"[green]Scheduler running, checking every {controller.settings.scheduler_interval_seconds}s[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped[/yellow]")
    finally:
        controller.scheduler.stop()


@cli.command()
@click.option('--port', default=None, type=int, help='Port to run the API server on')
@click.option('--host', default=None, help='Host to bind the API server to')
@click.pass_context
def serve(ctx, port, host):
    """Start the reconciliation API server."""
    from ..api.server import start_server

    settings = ctx.obj['controller'].settings
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"[green]Starting reconciliation API server on {host}:{port}[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        start_server(host=host, port=port, reload=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped[/yellow]")


def display_preview(summary: PreviewSummary):
    """Display a preview summary."""
    if not summary.success:
        console.print(f"[red]✗ {summary.file_name} cannot be imported[/red]")
        for error in summary.global_errors:
            console.print(f"  - {error}")
        return

    console.print(Panel.fit(
        f"[bold blue]{summary.file_name}[/bold blue]\n"
        f"{summary.total_rows} rows: {summary.create_count} to create, "
        f"{summary.update_count} to update, {summary.invalid_rows} invalid"
    ))

    if summary.invalid_sample:
        table = Table(title="Invalid Rows (sample)")
        table.add_column("Row", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Errors", style="red")
        for record in summary.invalid_sample:
            table.add_row(str(record.row_number), record.record.name or "", "; ".join(record.outcome.errors))
        console.print(table)

    for error in summary.parse_errors:
        console.print(f"[yellow]  - {error}[/yellow]")


def display_result(result: ExecutionResult):
    """Display execution results."""
    if result.success:
        console.print(f"[green]✓ {result.message}[/green]")
    else:
        console.print(f"[red]✗ {result.message}[/red]")

    table = Table(title="Import Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Total Rows", str(result.total_rows))
    table.add_row("Created", str(result.created))
    table.add_row("Updated", str(result.updated))
    table.add_row("Failed", str(result.failed))
    table.add_row("Recoverable Errors", str(len(result.recoverable_errors)))
    table.add_row("Critical Errors", str(len(result.critical_errors)))
    table.add_row("Audit Entry", result.audit_log_id or "N/A")
    table.add_row("Execution Time", f"{result.execution_time_ms} ms")

    console.print(table)

    for notice in result.notices:
        console.print(f"[blue]  - {notice}[/blue]")

    if result.errors:
        console.print("[red]Errors:[/red]")
        for error in result.errors:
            console.print(f"  - {error}")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
