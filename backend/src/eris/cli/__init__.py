"""CLI entry points for ERIS.

Provides command-line tools for:
- Running ingestion sessions
- Inspecting sessions
- Working the identity review queue
- Database setup
"""

import click

from .. import __version__
from .db import cli as db_cli
from .ingest import cli as ingest_cli
from .review import cli as review_cli
from .sessions import cli as sessions_cli


@click.group()
@click.version_option(version=__version__, prog_name="eris")
def main():
    """ERIS - Enforcement Record Ingestion System.

    Command-line tools for ingesting regulator enforcement records
    and reviewing ambiguous offender matches.
    """
    pass


main.add_command(ingest_cli, name="ingest")
main.add_command(sessions_cli, name="sessions")
main.add_command(review_cli, name="review")
main.add_command(db_cli, name="db")


if __name__ == "__main__":
    main()
