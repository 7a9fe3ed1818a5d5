"""CLI commands for database setup."""

import asyncio
import sys

import click


@click.group(name="db")
def cli():
    """Database commands."""
    pass


@cli.command(name="init")
def init_db():
    """Create all tables directly from the models.

    Intended for local development and tests; deployed databases are
    migrated with alembic.
    """
    from ..config import get_settings
    from ..db import Database

    async def _init():
        database = Database.from_settings(get_settings())
        try:
            await database.create_all()
        finally:
            await database.dispose()

    try:
        asyncio.run(_init())
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.secho("Database tables created.", fg="green")
