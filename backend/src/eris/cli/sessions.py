"""CLI commands for inspecting ingestion sessions.

Usage:
    eris sessions active
    eris sessions show SESSION_ID [--logs]
"""

import asyncio
import sys
from uuid import UUID

import click

from ..errors import SessionNotFound


@click.group(name="sessions")
def cli():
    """Ingestion session commands."""
    pass


@cli.command(name="active")
def list_active():
    """List sessions that are pending or running."""
    from ..context import PipelineContext
    from ..ingestion.tracking import SessionTracker

    async def _active():
        context = PipelineContext.from_settings()
        try:
            return await SessionTracker(context.database).active()
        finally:
            await context.close()

    try:
        sessions = asyncio.run(_active())
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not sessions:
        click.echo("No active sessions.")
        return

    click.echo(f"\nActive Sessions ({len(sessions)})")
    click.echo("=" * 70)
    for session in sessions:
        click.echo(
            f"{session.id}  {session.source:<12} {session.status.value:<8} "
            f"page={session.current_page or '-'} found={session.found} errors={session.errors}"
        )


@cli.command(name="show")
@click.argument("session_id")
@click.option("--logs", is_flag=True, help="Print per-page processing logs and captured output")
def show_session(session_id: str, logs: bool):
    """Show one session's status and counters."""
    from ..context import PipelineContext
    from ..ingestion.tracking import SessionTracker

    try:
        sid = UUID(session_id)
    except ValueError:
        click.echo(f"Invalid session ID: {session_id}", err=True)
        sys.exit(2)

    async def _show():
        context = PipelineContext.from_settings()
        try:
            tracker = SessionTracker(context.database)
            snapshot = await tracker.get(sid)
            page_logs = await tracker.logs_for(sid) if logs else []
            output = await tracker.log_output(sid) if logs else None
            return snapshot, page_logs, output
        finally:
            await context.close()

    try:
        snapshot, page_logs, output = asyncio.run(_show())
    except SessionNotFound as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    click.echo(f"\nSession {snapshot.id}")
    click.echo(f"  Source:    {snapshot.source} ({snapshot.strategy})")
    click.echo(f"  Status:    {snapshot.status.value}")
    click.echo(f"  Started:   {snapshot.started_at or '-'}")
    click.echo(f"  Completed: {snapshot.completed_at or '-'}")
    for key, value in snapshot.counters.items():
        click.echo(f"  {key.capitalize():<10} {value}")
    if snapshot.last_error:
        click.echo(f"  Last error: {snapshot.last_error}")

    if page_logs:
        click.echo("\nPages:")
        for entry in page_logs:
            click.echo(
                f"  page {entry.page}: found={entry.items_found} created={entry.items_created} "
                f"updated={entry.items_updated} existing={entry.items_existing} "
                f"failed={entry.items_failed}"
            )
            for error in entry.errors:
                click.echo(f"    ! {error}")
    if output:
        click.echo("\nLog output:")
        click.echo(output)
