from datetime import datetime, timezone
from pathlib import Path

import click

from codemend import __version__
from codemend.audit.logger import AuditLogger
from codemend.audit.models import AuditEvent
from codemend.config.loader import load_settings
from codemend.config.settings import CodemendConfig
from codemend.core.errors import ConfigError
from codemend.utils.logging import setup_logging

from .commands.calibration_report import calibration_report
from .commands.crawl import crawl
from .commands.review_queue import review_queue
from .commands.serve import serve


class CliContext:
    def __init__(self, settings: CodemendConfig, audit_logger: AuditLogger, project_path: Path):
        self.settings = settings
        self.audit_logger = audit_logger
        self.project_path = project_path

    def audit(self, command: str, **args) -> None:
        self.audit_logger.log(
            AuditEvent(
                timestamp=datetime.now(timezone.utc),
                event_type=f"cli.{command}",
                source="cli",
                payload={"command": command, "args": args},
            )
        )


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option("--project", "project_path", type=click.Path(file_okay=False), default=".", help="Project directory holding .codemend.yaml.")
@click.option("--db", "db_url", help="SQLAlchemy URL; switches storage to the sql backend.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines.")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx, project_path, db_url, verbose, json_logs):
    """
    codemend: detect, fix, review and monitor code issues.
    """
    setup_logging("DEBUG" if verbose else "WARNING", json_logs)
    try:
        settings = load_settings(project_path)
    except ConfigError as e:
        raise click.ClickException(str(e))
    if db_url:
        settings.storage.backend = "sql"
        settings.storage.url = db_url

    ctx.obj = CliContext(settings=settings, audit_logger=AuditLogger(settings.audit), project_path=Path(project_path))


main.add_command(crawl)
main.add_command(review_queue)
main.add_command(calibration_report)
main.add_command(serve)

if __name__ == "__main__":
    main()
