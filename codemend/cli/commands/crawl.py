import asyncio
from typing import List, Optional, Tuple

import click

from codemend.app import Services
from codemend.crawler.manager import CrawlHandle
from codemend.models.crawl import CrawlOptions, CrawlState
from ..formatter import console, format_table


async def run_crawls(services: Services, paths: List[str], options: CrawlOptions) -> Tuple[List[CrawlHandle], int]:
    await services.start()
    try:
        handles = services.crawl_manager.start_parallel_crawls(paths, options)
        await services.crawl_manager.wait_all()
        pending = len(await services.review.review_queue(limit=1000))
        return handles, pending
    finally:
        await services.close()


@click.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option("--ext", "extensions", multiple=True, help="File extensions to scan, e.g. --ext .py")
@click.option("--auto-fix/--no-auto-fix", default=None, help="Auto-approve and fix safe issues.")
@click.option("--concurrency", "-c", type=int, help="Maximum crawls running at once.")
@click.option("--max-files", type=int, help="Stop each crawl after this many files.")
@click.pass_context
def crawl(ctx, paths, extensions, auto_fix, concurrency, max_files: Optional[int]):
    """
    Crawl one or more directories for issues.
    """
    cli = ctx.obj
    options = CrawlOptions(
        extensions=list(extensions) or None,
        auto_fix=auto_fix,
        concurrency=concurrency,
        max_files=max_files,
    )
    services = Services.build(cli.settings)
    try:
        handles, pending = asyncio.run(run_crawls(services, list(paths), options))
    finally:
        cli.audit("crawl", paths=list(paths), auto_fix=auto_fix)

    rows = []
    for h in handles:
        stats = h.summary.stats if h.summary else None
        rows.append(
            [
                h.target,
                h.state.value,
                stats.files_scanned if stats else "-",
                stats.files_skipped if stats else "-",
                stats.issues_found if stats else "-",
                stats.issues_auto_fixed if stats else "-",
                h.errors,
            ]
        )
    console.print(
        format_table(rows, ["Target", "State", "Scanned", "Skipped", "Issues", "Auto-fixed", "Errors"], title="Crawl results")
    )
    console.print(f"{pending} issue(s) waiting for review")

    failed = [h for h in handles if h.state in (CrawlState.REJECTED, CrawlState.FAILED) or h.errors]
    if failed:
        for h in failed:
            click.echo(f"{h.target}: {h.message or f'{h.errors} error(s)'}", err=True)
        ctx.exit(1)
