#!/usr/bin/env python3
"""
Command-line interface for the audit trail store.

Provides recycle bin, history, recovery and export tools for operators.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import click
import pandas as pd  # type: ignore[import-untyped]
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .audit_trail.models import LogEntry
from .audit_trail.store import AuditTrailStore
from .config import AuditTrailConfig
from .exceptions import AuditTrailError

console = Console()

T = TypeVar("T")


def run_with_store(
    config: AuditTrailConfig, operation: Callable[[AuditTrailStore], Awaitable[T]]
) -> T:
    """
    Synchronous wrapper that opens a store, runs one operation and closes it.

    Exits with status 1 when the audit log cannot be opened.
    """

    async def _run() -> T:
        store = await AuditTrailStore.from_config(config)
        try:
            return await operation(store)
        finally:
            await store.storage.dispose()

    try:
        return asyncio.run(_run())
    except AuditTrailError as e:
        console.print(f"[red]Error accessing audit log: {e}[/red]")
        sys.exit(1)


def entry_rows(entries: List[LogEntry]) -> List[Dict[str, Any]]:
    """Flatten log entries into export rows."""
    return [
        {
            "logId": entry.id,
            "createdAt": entry.created_at.isoformat() if entry.created_at else None,
            "action": entry.action.value,
            "entityType": entry.entity_type,
            "entityId": entry.entity_id,
            "actorId": entry.actor_id,
            "actorName": entry.actor.name if entry.actor else None,
            "payload": json.dumps(entry.payload_json(), sort_keys=True),
        }
        for entry in entries
    ]


def _format_timestamp(value: Any) -> str:
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value or "")


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML config file (defaults to AUDIT_TRAIL_* variables)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]) -> None:
    """Audit Trail - append-only audit log with soft delete and recovery."""
    try:
        if config_path:
            config = AuditTrailConfig.from_file(config_path)
        else:
            config = AuditTrailConfig.from_env()
    except (AuditTrailError, ValueError) as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level.value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config

    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]Audit Trail[/bold blue] v{__version__}\n"
                "[dim]Append-only audit log with soft delete and recovery[/dim]\n\n"
                "Use [bold]audit-trail --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.group()
def config() -> None:
    """Inspect audit trail configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
@click.pass_obj
def config_show(config: AuditTrailConfig, format: str) -> None:
    """Display current configuration."""
    config_dict = config.to_dict()
    if config_dict.get("jwt_secret"):
        config_dict["jwt_secret"] = "********"

    if format == "json":
        console.print_json(data=config_dict)
    elif format == "yaml":
        import yaml  # type: ignore[import-untyped]

        console.print(yaml.dump(config_dict, default_flow_style=False))
    else:
        table = Table(title="Audit Trail Configuration", show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        categories = {
            "General": ["application_name", "environment", "log_level"],
            "Storage": ["database_url", "pool_size", "max_overflow", "echo_sql"],
            "Listing": ["default_page_size", "max_page_size"],
            "Recovery": ["recover_window_days"],
            "Authentication": ["jwt_secret", "jwt_algorithm"],
        }

        for category, settings in categories.items():
            table.add_row(f"[bold]{category}[/bold]", "")
            for setting in settings:
                value = config_dict.get(setting)
                if value is None:
                    value = "[dim]Not configured[/dim]"
                elif isinstance(value, bool):
                    value = "✓" if value else "✗"
                table.add_row(f"  {setting}", str(value))

        console.print(table)


@cli.command("init-db")
@click.pass_obj
def init_db(config: AuditTrailConfig) -> None:
    """Create the audit log table if it does not exist."""

    async def _noop(store: AuditTrailStore) -> None:
        return None

    run_with_store(config, _noop)
    console.print(f"[green]✓[/green] Audit log ready at {config.database_url}")


@cli.command("deleted")
@click.option("--entity", help="Filter by entity type")
@click.option("--page", type=click.IntRange(min=1), default=1, help="Page number")
@click.option("--limit", type=click.IntRange(min=1), help="Items per page")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def deleted(
    config: AuditTrailConfig,
    entity: Optional[str],
    page: int,
    limit: Optional[int],
    format: str,
) -> None:
    """List the recycle bin."""
    result = run_with_store(
        config, lambda store: store.list_deleted(page, limit, entity)
    )

    if format == "json":
        console.print_json(data=result.model_dump(mode="json", by_alias=True))
        return

    if not result.items:
        console.print("[yellow]Recycle bin is empty[/yellow]")
        return

    table = Table(title=f"Recycle Bin (page {page}, {result.total} deleted)")
    table.add_column("Log ID", style="cyan", justify="right")
    table.add_column("Entity", style="blue")
    table.add_column("Deleted At", style="green")
    table.add_column("Deleted By", style="yellow")
    table.add_column("Recoverable", style="magenta")

    for item in result.items:
        deleted_by = item.deleted_by
        if item.deleted_by_actor and item.deleted_by_actor.name:
            deleted_by = f"{item.deleted_by_actor.name} ({item.deleted_by})"
        table.add_row(
            str(item.log_id),
            f"{item.entity_type}:{item.entity_id}",
            _format_timestamp(item.deleted_at),
            deleted_by,
            "[green]yes[/green]" if item.can_recover else "[red]no[/red]",
        )

    console.print(table)


@cli.command("deleted-ids")
@click.argument("entity_type")
@click.pass_obj
def deleted_ids(config: AuditTrailConfig, entity_type: str) -> None:
    """Print the ids of currently deleted ENTITY_TYPE rows."""
    ids = run_with_store(config, lambda store: store.deleted_ids(entity_type))
    for entity_id in sorted(ids):
        click.echo(entity_id)


@cli.command("history")
@click.argument("entity_type")
@click.argument("entity_id", type=int)
@click.option("--limit", type=click.IntRange(min=1), help="Maximum entries")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def history(
    config: AuditTrailConfig,
    entity_type: str,
    entity_id: int,
    limit: Optional[int],
    format: str,
) -> None:
    """Show the audit history of one entity, newest first."""
    entries = run_with_store(
        config, lambda store: store.history(entity_type, entity_id, limit)
    )

    if format == "json":
        console.print_json(
            data=[entry.model_dump(mode="json", by_alias=True) for entry in entries]
        )
        return

    if not entries:
        console.print(
            f"[yellow]No audit entries for {entity_type}:{entity_id}[/yellow]"
        )
        return

    table = Table(title=f"History of {entity_type}:{entity_id}")
    table.add_column("Log ID", style="cyan", justify="right")
    table.add_column("Timestamp", style="green")
    table.add_column("Action", style="yellow")
    table.add_column("Actor", style="blue")

    colors = {"DELETE": "red", "RECOVER": "green"}
    for entry in entries:
        action = entry.action.value
        if action in colors:
            action = f"[{colors[action]}]{action}[/{colors[action]}]"
        actor = entry.actor.name if entry.actor and entry.actor.name else None
        table.add_row(
            str(entry.id),
            _format_timestamp(entry.created_at),
            action,
            actor or entry.actor_id,
        )

    console.print(table)


@cli.command("recover")
@click.argument("log_id", type=int)
@click.option("--actor", required=True, help="Id of the recovering user")
@click.pass_obj
def recover(config: AuditTrailConfig, log_id: int, actor: str) -> None:
    """Recover the deletion recorded in LOG_ID."""
    result = run_with_store(config, lambda store: store.recover(log_id, actor))

    if result.success:
        console.print(f"[green]✓ {result.message}[/green]")
    else:
        console.print(f"[red]✗ {result.message}[/red]")
        sys.exit(1)


@cli.command("export")
@click.argument("entity_type")
@click.argument("entity_id", type=int)
@click.option("--output", type=click.Path(), required=True, help="Output file path")
@click.option("--format", type=click.Choice(["json", "csv", "excel"]), default="csv")
@click.pass_obj
def export(
    config: AuditTrailConfig,
    entity_type: str,
    entity_id: int,
    output: str,
    format: str,
) -> None:
    """Export the history of one entity for reporting."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Exporting audit history...", total=None)

        entries = run_with_store(
            config, lambda store: store.history(entity_type, entity_id)
        )
        progress.update(task, description=f"Found {len(entries)} entries, exporting...")

        df = pd.DataFrame(entry_rows(entries))

        output_path = Path(output)
        try:
            if format == "json":
                df.to_json(output_path, orient="records", date_format="iso", indent=2)
            elif format == "excel":
                df.to_excel(output_path, index=False, engine="openpyxl")
            else:  # csv
                df.to_csv(output_path, index=False)
        except OSError as e:
            progress.stop()
            console.print(f"[red]Error exporting audit history: {e}[/red]")
            sys.exit(1)

        progress.stop()

    console.print(
        f"[green]✓ Exported {len(entries)} audit entries to {output_path}[/green]"
    )


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8000, help="Bind port")
@click.pass_obj
def serve(config: AuditTrailConfig, host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app_from_config

    if not config.jwt_secret:
        console.print(
            "[red]Error: AUDIT_TRAIL_JWT_SECRET must be set to serve the API[/red]"
        )
        sys.exit(1)

    app = create_app_from_config(config)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.value.lower())


if __name__ == "__main__":
    cli()
