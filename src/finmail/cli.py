"""Command-line interface for finmail.

Provides commands for configuration validation, database setup, Gmail sync,
batch job inspection, and the API server.

Usage:
    python -m finmail validate-config
    python -m finmail init-db
    python -m finmail sync --user 1
    python -m finmail jobs --user 1 --active
    python -m finmail serve
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from finmail.config import validate_config_file
from finmail.core.logging import configure_logging

if TYPE_CHECKING:
    from finmail.config_schema import AppConfig
    from finmail.db.store import DatabaseStore

console = Console()


def _load_config() -> AppConfig:
    """Load config or exit with an actionable message."""
    from finmail.config import get_config
    from finmail.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and edit it."
        )
        sys.exit(1)


async def _open_store(config: AppConfig) -> DatabaseStore:
    from finmail.db.store import DatabaseStore

    store = DatabaseStore(config.database.path)
    await store.initialize()
    return store


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """finmail - financial email dashboard for Gmail."""
    log_level = "DEBUG" if debug else "INFO"
    # Human-readable output for the CLI, JSON for the server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the SQLite database and its tables."""
    from finmail.core.errors import DatabaseError

    config = _load_config()
    try:
        asyncio.run(_open_store(config))
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Database ready at [cyan]{config.database.path}[/cyan]")


@cli.command("serve")
@click.option("--host", default=None, help="Host to bind to (default: server.host)")
@click.option("--port", default=None, type=int, help="Port to bind to (default: server.port)")
def serve(host: str | None, port: int | None) -> None:
    """Start the API server and the batch worker."""
    import uvicorn

    from finmail.web.app import create_app

    config = _load_config()
    host = host or config.server.host
    port = port or config.server.port

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The API has no session authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level=config.server.log_level, json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level=config.server.log_level.lower())


@cli.command("sync")
@click.option("--user", "user_id", required=True, type=int, help="User ID to sync")
def sync(user_id: int) -> None:
    """Fetch a user's financial emails from Gmail."""
    try:
        asyncio.run(_run_sync(user_id))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_sync(user_id: int) -> None:
    """Async implementation of the sync command."""
    from functools import partial

    from finmail.engine.sync import GmailSyncEngine, build_message_manager
    from finmail.gmail.oauth import GoogleOAuth

    config = _load_config()
    store = await _open_store(config)

    user = await store.get_user(user_id)
    if user is None:
        console.print(f"[red]User {user_id} not found.[/red] Sign in through the API first.")
        sys.exit(1)

    oauth = GoogleOAuth.from_config(config.google)
    engine = GmailSyncEngine(store, config, partial(build_message_manager, oauth=oauth))
    result = await engine.sync_user(user)

    console.print(
        f"[green]✓[/green] fetched={result.fetched} created={result.created} "
        f"updated={result.updated} contacts={result.contacts_touched} "
        f"({result.duration_ms}ms)"
    )


@cli.command("jobs")
@click.option("--user", "user_id", required=True, type=int, help="User ID")
@click.option("--active", is_flag=True, help="Only pending and running jobs")
def jobs(user_id: int, active: bool) -> None:
    """List a user's batch jobs."""
    asyncio.run(_show_jobs(user_id, active))


async def _show_jobs(user_id: int, active: bool) -> None:
    config = _load_config()
    store = await _open_store(config)

    if active:
        batch_jobs = await store.get_active_batch_jobs(user_id)
    else:
        batch_jobs = await store.get_batch_jobs(user_id, limit=config.batch.recent_jobs_limit)

    if not batch_jobs:
        console.print("[dim]No batch jobs.[/dim]")
        return

    table = Table(box=None, padding=(0, 2))
    table.add_column("ID", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Items")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("OK/Failed", justify="right")
    table.add_column("Created")

    for job in batch_jobs:
        table.add_row(
            str(job.id),
            job.type,
            job.item_type,
            job.status,
            f"{job.progress}%",
            f"{job.successful_items}/{job.failed_items}",
            job.created_at.strftime("%Y-%m-%d %H:%M") if job.created_at else "",
        )
    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
