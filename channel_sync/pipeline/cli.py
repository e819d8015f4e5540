"""CLI entry point for the channel sync job.

Usage:
    channel-sync            # run the sync (same as `channel-sync sync`)
    channel-sync status     # roster and latest snapshot per channel
    channel-sync usage      # per-key call counts for the last three days

Configuration comes from the environment (YT_API_KEYS, SYNC_DB_PATH,
SYNC_CONFIG, SYNC_LOG_FILE); there are no command-line flags.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from datetime import datetime, timedelta
from typing import Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from channel_sync.connectors.rotation import KeyRotationClient, Transport
from channel_sync.connectors.youtube import YouTubeAPI
from channel_sync.errors import ConfigurationError
from channel_sync.pipeline.config import DEFAULT_DB_PATH, Settings, load_settings, setup_logging
from channel_sync.pipeline.orchestrator import SyncScheduler
from channel_sync.storage.db import DatabaseManager
from channel_sync.storage.models import SyncSummary
from channel_sync.storage.usage import UsageAccountant

console = Console()
logger = logging.getLogger(__name__)

USAGE_WINDOW_DAYS = 2
USAGE_WARN_AT = 4000
USAGE_CRITICAL_AT = 8000


def run_async(coro):
    """Run an async function in a fresh event loop."""
    return asyncio.run(coro)


async def run_sync(settings: Settings, transport: Optional[Transport] = None) -> SyncSummary:
    """Wire the engine from settings and run one batch."""
    db = DatabaseManager(settings.db_path)
    await db.initialize()
    client = KeyRotationClient(
        settings.keys,
        usage=UsageAccountant(db),
        transport=transport,
        request_timeout=settings.request_timeout,
    )
    try:
        scheduler = SyncScheduler(
            db,
            YouTubeAPI(client, settings.costs),
            max_concurrent=settings.max_concurrent,
            run_deadline=settings.run_deadline,
            entity_delay=settings.entity_delay,
            unreachable_after_failures=settings.unreachable_after_failures,
        )
        return await scheduler.run()
    finally:
        # Shutdown errors are logged only.
        for close in (client.close, db.close):
            try:
                await close()
            except Exception:
                logger.exception("Error during shutdown")


def _sync_command(transport: Optional[Transport] = None) -> int:
    """Run the sync and return the process exit code."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return 1

    setup_logging(settings.log_file)
    logger.info("%d API key(s) configured; store at %s", len(settings.keys), settings.db_path)
    try:
        run_async(run_sync(settings, transport))
    except Exception:
        logger.exception("Sync aborted before completing the roster")
        return 1
    return 0


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """Synchronize channel statistics into the local store."""
    if ctx.invoked_subcommand is None:
        sys.exit(_sync_command())


@cli.command()
def sync():
    """Run one sync batch over the roster."""
    sys.exit(_sync_command())


def _db_path() -> str:
    load_dotenv()
    return os.environ.get("SYNC_DB_PATH") or DEFAULT_DB_PATH


@cli.command()
def status():
    """Show roster reachability and the latest snapshot per channel."""

    async def _run():
        db = DatabaseManager(_db_path())
        await db.initialize()
        try:
            stats = await db.get_stats()
            channels = await db.get_all_channels()
            latest = await db.get_latest_snapshot_dates()
        finally:
            await db.close()

        console.print("\n[bold]Store Status[/bold]")
        console.print(f"  Channels: {stats['total_channels']} ({stats['unreachable_channels']} unreachable)")
        console.print(f"  Snapshots: {stats['total_snapshots']}")
        console.print(f"  Size: {stats['db_size_bytes'] / 1024:.1f} KB")

        if not channels:
            return
        today = datetime.utcnow().date().isoformat()
        table = Table(title="Channels")
        table.add_column("ID", justify="right", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Canonical ID")
        table.add_column("Last Snapshot")
        table.add_column("State")
        for ch in channels:
            last = latest.get(ch.id)
            if ch.unreachable:
                state = "[red]unreachable"
            elif not ch.active:
                state = "[dim]inactive"
            elif last == today:
                state = "[green]synced today"
            else:
                state = "[yellow]pending"
            table.add_row(str(ch.id), ch.label, ch.cached_id or "-", last or "never", state)
        console.print(table)

    run_async(_run())


@cli.command()
def usage():
    """Show per-key call counts for the recent days."""

    async def _run():
        db = DatabaseManager(_db_path())
        await db.initialize()
        try:
            since = (datetime.utcnow().date() - timedelta(days=USAGE_WINDOW_DAYS)).isoformat()
            records = await UsageAccountant(db).usage_since(since)
        finally:
            await db.close()

        if not records:
            console.print("[yellow]No usage recorded.[/yellow]")
            return

        table = Table(title=f"API Key Usage since {since}")
        table.add_column("Date")
        table.add_column("Key", style="cyan")
        table.add_column("Calls", justify="right")
        table.add_column("Last Used")
        for r in records:
            if r.count >= USAGE_CRITICAL_AT:
                style = "red"
            elif r.count >= USAGE_WARN_AT:
                style = "yellow"
            else:
                style = "green"
            last_used = r.last_used_at.strftime("%Y-%m-%d %H:%M") if r.last_used_at else "-"
            table.add_row(r.date, r.key_label, f"[{style}]{r.count}", last_used)
        console.print(table)

    run_async(_run())


def main():
    cli()


if __name__ == "__main__":
    main()
