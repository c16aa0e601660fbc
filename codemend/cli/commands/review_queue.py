import asyncio

import click

from codemend.app import Services
from ..formatter import colorize_severity, console, format_json, format_table


async def load_queue(services: Services, limit: int):
    await services.start()
    try:
        return await services.review.review_queue(limit=limit)
    finally:
        await services.close()


@click.command("review-queue")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--format", "-f", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def review_queue(ctx, limit, output_format):
    """
    List issues waiting for review.
    """
    cli = ctx.obj
    if cli.settings.storage.backend == "memory":
        click.echo("Warning: in-memory storage is empty on every run; pass --db to read a persistent store.", err=True)
    issues = asyncio.run(load_queue(Services.build(cli.settings), limit))
    cli.audit("review-queue", limit=limit)

    if output_format == "json":
        click.echo(format_json([i.model_dump(mode="json") for i in issues]))
        return

    rows = [
        [
            i.id,
            colorize_severity(i.severity.value),
            i.type.value,
            f"{i.file_path}:{i.line}",
            i.message,
            f"{i.fix.safety.value} ({i.fix.effective_confidence:.2f})" if i.fix else "-",
        ]
        for i in issues
    ]
    console.print(format_table(rows, ["ID", "Severity", "Type", "Location", "Message", "Fix"], title="Review queue"))
