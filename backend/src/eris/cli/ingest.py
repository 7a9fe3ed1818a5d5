"""CLI commands for running ingestion sessions.

Usage:
    eris ingest run CONFIG.json [--max-records N] [--verbose]
    eris ingest check CONFIG.json
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from ..errors import ConfigurationError, ErisError
from ..logging import setup_logging
from ..models.base import SessionStatus


@click.group(name="ingest")
def cli():
    """Enforcement record ingestion commands."""
    # Initialize logging for CLI
    setup_logging()


def _load_config(path: Path, overrides: dict[str, Any] | None = None):
    from ..ingestion import SourceConfig

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    data.update({key: value for key, value in (overrides or {}).items() if value is not None})
    return SourceConfig.from_dict(data)


def _echo_counters(snapshot) -> None:
    click.echo(f"  Found:    {snapshot.found}")
    click.echo(f"  Created:  {snapshot.created}")
    click.echo(f"  Updated:  {snapshot.updated}")
    click.echo(f"  Existing: {snapshot.existing}")
    click.echo(f"  Errors:   {snapshot.errors}")
    click.echo(f"  Pages:    {snapshot.pages_processed}")


@cli.command(name="run")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--max-records",
    type=int,
    default=None,
    help="Maximum number of records to fetch (overrides the config file)",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
def run_ingestion(config_path: Path, max_records: int | None, verbose: bool):
    """Run one ingestion session and wait for it to finish.

    CONFIG_PATH is a JSON file describing the source (endpoint,
    strategy, credentials, paging and field mapping).

    Examples:

        # Ingest a cursor-paginated source
        eris ingest run sources/hse_cases.json

        # Try a source with a handful of records
        eris ingest run sources/ea_notices.json --max-records 20 -v
    """
    from ..context import PipelineContext
    from ..ingestion.runner import IngestionService

    try:
        config = _load_config(config_path, {"max_records": max_records})
    except ErisError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    click.echo(f"Starting ingestion for {config.source} ({config.strategy.value})...")
    if verbose:
        click.echo(f"  Endpoint: {config.endpoint}")
        for key, value in config.range_params().items():
            click.echo(f"  {key}: {value}")

    async def _run():
        context = PipelineContext.from_settings()
        try:
            service = IngestionService(context)
            started = await service.start_session(config)
            click.echo(f"  Session: {started.id}")
            try:
                return await service.wait(started.id)
            except asyncio.CancelledError:
                await service.shutdown(timeout=10.0)
                raise
        finally:
            await context.close()

    try:
        snapshot = asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("\nInterrupted; session stopped.", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    color = {SessionStatus.COMPLETED: "green", SessionStatus.STOPPED: "yellow"}.get(
        snapshot.status, "red"
    )
    click.echo("\nSession finished: ", nl=False)
    click.secho(snapshot.status.value, fg=color)
    _echo_counters(snapshot)
    if snapshot.last_error:
        click.echo(f"  Last error: {snapshot.last_error}")
    if snapshot.status != SessionStatus.COMPLETED:
        sys.exit(1)


@cli.command(name="check")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def check_source(config_path: Path):
    """Validate a source config and probe the source without ingesting.

    Example:

        eris ingest check sources/hse_cases.json
    """
    from ..config import get_settings
    from ..ingestion import build_adapter

    async def _check(config):
        adapter = build_adapter(config, settings=get_settings())
        handle = await adapter.initialize(config)
        try:
            await adapter.validate_connection(handle)
            return await adapter.get_total_count(handle)
        finally:
            await handle.close()

    try:
        config = _load_config(config_path)
        total = asyncio.run(_check(config))
    except ErisError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.secho(f"{config.source}: OK", fg="green")
    if total is not None:
        click.echo(f"  Reported records: {total}")
