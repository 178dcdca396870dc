"""
Output formatting for the CLI.
"""

import json
from enum import Enum
from typing import Any

import yaml
from rich.console import Console
from rich.json import JSON
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "waiting_user": "yellow",
    "executing": "blue",
    "thinking": "blue",
    "idle": "dim",
}


class OutputFormat(str, Enum):
    """Available output formats."""
    TABLE = "table"
    JSON = "json"
    YAML = "yaml"


class OutputFormatter:
    """Renders service results in the selected format."""

    @staticmethod
    def format_data(data: Any, format_type: OutputFormat, title: str | None = None) -> None:
        if format_type == OutputFormat.JSON:
            console.print(JSON.from_data(data))
        elif format_type == OutputFormat.YAML:
            console.print(yaml.dump(data, default_flow_style=False, indent=2, allow_unicode=True))
        else:
            OutputFormatter._format_table(data, title)

    @staticmethod
    def _format_table(data: Any, title: str | None = None) -> None:
        if isinstance(data, list) and data and isinstance(data[0], dict):
            table = Table(title=title)
            for key in data[0].keys():
                table.add_column(key.replace("_", " ").title(), style="cyan")
            for item in data:
                table.add_row(*(_cell(v) for v in item.values()))
            console.print(table)
        elif isinstance(data, dict):
            table = Table(title=title, show_header=False)
            table.add_column("Property", style="cyan")
            table.add_column("Value", style="white")
            for key, value in data.items():
                if isinstance(value, (list, dict)):
                    value_str = json.dumps(value, indent=2, ensure_ascii=False)
                else:
                    value_str = _cell(value)
                table.add_row(key.replace("_", " ").title(), value_str)
            console.print(table)
        else:
            console.print(str(data))

    @staticmethod
    def format_session_list(sessions: list[dict[str, Any]], format_type: OutputFormat) -> None:
        if format_type != OutputFormat.TABLE:
            OutputFormatter.format_data(sessions, format_type)
            return
        if not sessions:
            console.print("[dim]No sessions found[/dim]")
            return

        table = Table(title="Generation Sessions")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Status")
        table.add_column("Iteration", justify="right")
        table.add_column("Updated", style="dim")
        for session in sessions:
            status = session.get("status", "")
            style = STATUS_STYLES.get(status, "white")
            table.add_row(
                session.get("id", ""),
                session.get("title", ""),
                f"[{style}]{status}[/{style}]",
                str(session.get("iteration", 0)),
                session.get("updated_at", "")[:19],
            )
        console.print(table)

    @staticmethod
    def format_output(output: dict[str, Any], format_type: OutputFormat) -> None:
        """Show the generated output fields."""
        fields = output.get("fields", {})
        if format_type != OutputFormat.TABLE:
            OutputFormatter.format_data(fields, format_type)
            return
        for name, content in fields.items():
            console.print(f"\n[bold green]{name.title()}[/bold green]")
            console.print(JSON.from_data(content))


def _cell(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return str(value)
    return str(value) if value is not None else ""
