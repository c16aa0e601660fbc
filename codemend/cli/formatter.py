import json

from rich.console import Console
from rich.table import Table

console = Console()

SEVERITY_COLORS = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "green"}


def format_table(data, columns, title=None):
    """Formats data into a rich table."""
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in data:
        table.add_row(*[str(item) for item in row])
    return table


def format_json(data, pretty=True):
    if pretty:
        return json.dumps(data, indent=2, default=str)
    return json.dumps(data, separators=(",", ":"), default=str)


def colorize_severity(severity: str) -> str:
    color = SEVERITY_COLORS.get(severity, "white")
    return f"[{color}]{severity}[/{color}]"
