"""CLI commands for the identity review queue.

Usage:
    eris review list [--limit N] [--offset N] [--verbose]
    eris review resolve CASE_ID ENTITY_REF [--reviewer NAME] [--notes TEXT]
"""

import asyncio
import sys
from uuid import UUID

import click

from ..errors import ReviewCaseNotFound, ReviewResolutionError


@click.group(name="review")
def cli():
    """Identity review queue commands."""
    pass


@cli.command(name="list")
@click.option("--limit", type=int, default=20, help="Maximum cases to show")
@click.option("--offset", type=int, default=0, help="Cases to skip")
@click.option("--verbose", "-v", is_flag=True, help="Show every candidate")
def list_cases(limit: int, offset: int, verbose: bool):
    """List pending review cases, best match first.

    Examples:

        eris review list
        eris review list --limit 5 --verbose
    """
    from ..context import PipelineContext
    from ..resolution.linker import EntityLinker
    from ..resolution.review import ReviewQueue

    async def _list():
        context = PipelineContext.from_settings()
        try:
            queue = ReviewQueue(context.database, EntityLinker(context.database))
            return await queue.list_pending(limit=limit, offset=offset)
        finally:
            await context.close()

    try:
        cases, total = asyncio.run(_list())
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not cases:
        click.echo("No pending review cases.")
        return

    click.echo(f"\nReview Cases ({len(cases)} of {total} pending)")
    click.echo("=" * 70)
    for case in cases:
        click.echo(f"\nCase: {case.id}")
        click.echo(f"  Record:  {case.source}/{case.regulator_id}")
        click.echo(f"  Name:    {case.offender_name}")
        click.echo(f"  Best:    {case.best_score:.2f}" if case.best_score is not None else "  Best:    -")
        shown = case.candidates if verbose else case.candidates[:1]
        for candidate in shown:
            click.echo(
                f"    {candidate['score']:.2f}  {candidate['name']}  "
                f"[{candidate['entity_ref']}]"
            )

    click.echo("\n" + "=" * 70)
    click.echo("Use 'eris review resolve <case_id> <entity_ref>' to resolve")


@cli.command(name="resolve")
@click.argument("case_id")
@click.argument("entity_ref")
@click.option("--reviewer", type=str, default="cli-user", help="Reviewer username")
@click.option("--notes", type=str, default=None, help="Review notes")
def resolve_case(case_id: str, entity_ref: str, reviewer: str, notes: str | None):
    """Resolve a review case to one offender.

    ENTITY_REF is one of the case's candidate references or the id of
    an existing offender.

    Example:

        eris review resolve 3f1c... companies_house:01234567 --notes "Same registered office"
    """
    from ..context import PipelineContext
    from ..resolution.linker import EntityLinker
    from ..resolution.review import ReviewQueue

    try:
        cid = UUID(case_id)
    except ValueError:
        click.echo(f"Invalid case ID: {case_id}", err=True)
        sys.exit(2)

    async def _resolve():
        context = PipelineContext.from_settings()
        try:
            queue = ReviewQueue(context.database, EntityLinker(context.database), context.events)
            return await queue.resolve(cid, entity_ref, resolved_by=reviewer, notes=notes)
        finally:
            await context.close()

    try:
        resolved = asyncio.run(_resolve())
    except (ReviewCaseNotFound, ReviewResolutionError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("\nCase resolved successfully!")
    click.echo(f"  Case ID:  {resolved.id}")
    click.echo(f"  Offender: {resolved.resolved_entity_ref}")
    click.echo(f"  Reviewer: {reviewer}")
    click.echo("  Status:   ", nl=False)
    click.secho(resolved.status.value, fg="green")
