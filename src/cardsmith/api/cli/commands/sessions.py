"""
Sessions command group for managing generation sessions.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm

from ....application.service import GenerationService
from ....core.domain.errors import SessionNotFoundError
from ..output_formatter import OutputFormat, OutputFormatter
from .generate import load_settings

console = Console()
app = typer.Typer(help="Manage generation sessions")


def _service(config_file: Optional[Path]) -> GenerationService:
    return GenerationService(load_settings(config_file))


@app.command("list")
def list_sessions(
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of sessions to show"),
    status: Optional[str] = typer.Option(
        None, "--status", "-s", help="Filter by status (completed, failed, waiting_user, ...)"
    ),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.TABLE, "--output", "-o", help="Output format"
    ),
):
    """
    List generation sessions, most recently updated first.

    Examples:
        cardsmith sessions list
        cardsmith sessions list --status failed --output json
    """
    sessions = asyncio.run(_service(config_file).list_sessions())
    if status:
        sessions = [s for s in sessions if s["status"] == status]
    sessions = list(reversed(sessions))[:limit]
    OutputFormatter.format_session_list(sessions, output_format)


@app.command("show")
def show_session(
    session_id: str = typer.Argument(help="Session ID"),
    messages: bool = typer.Option(False, "--messages", help="Include the conversation log"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.TABLE, "--output", "-o", help="Output format"
    ),
):
    """
    Show detailed information about a session.

    Examples:
        cardsmith sessions show <id>
        cardsmith sessions show <id> --messages --output yaml
    """
    service = _service(config_file)
    try:
        details = asyncio.run(service.get_status(session_id))
        if messages:
            details["messages"] = [
                f"[{m['role']}/{m['type']}] {m['content']}"
                for m in asyncio.run(service.get_messages(session_id))
            ]
    except SessionNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold blue]Session Details: {session_id}[/bold blue]")
    OutputFormatter.format_data(details, output_format)


@app.command("delete")
def delete_session(
    session_id: str = typer.Argument(help="Session ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
):
    """
    Delete a session.

    Examples:
        cardsmith sessions delete <id> --force
    """
    if not force and not Confirm.ask(f"Delete session {session_id}?"):
        console.print("[yellow]Deletion cancelled[/yellow]")
        raise typer.Exit()

    if asyncio.run(_service(config_file).delete_session(session_id)):
        console.print(f"[green]✓ Deleted session {session_id}[/green]")
    else:
        console.print(f"[red]Error: Session not found: {session_id}[/red]")
        raise typer.Exit(1)


@app.command("export")
def export_session(
    session_id: str = typer.Argument(help="Session ID"),
    output_file: Optional[Path] = typer.Option(
        None, "--file", "-f", help="Write the export to this file instead of stdout"
    ),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
):
    """
    Export a session as JSON.

    Examples:
        cardsmith sessions export <id> --file session.json
    """
    try:
        exported = asyncio.run(_service(config_file).export_session(session_id))
    except SessionNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    text = json.dumps(exported, indent=2, ensure_ascii=False)
    if output_file:
        output_file.write_text(text, encoding="utf-8")
        console.print(f"[green]✓ Exported session to {output_file}[/green]")
    else:
        console.print_json(text)


@app.command("cleanup")
def cleanup_sessions(
    days: Optional[int] = typer.Option(
        None, "--days", "-d", min=1, help="Age in days (defaults to session_cleanup_days)"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
):
    """
    Delete sessions that have not been updated for a number of days.

    Examples:
        cardsmith sessions cleanup --force
        cardsmith sessions cleanup --days 7
    """
    service = _service(config_file)
    days = days or service.settings.session_cleanup_days
    if not force and not Confirm.ask(f"Delete sessions older than {days} days?"):
        console.print("[yellow]Cleanup cancelled[/yellow]")
        raise typer.Exit()

    removed = asyncio.run(service.cleanup_sessions(days))
    console.print(f"[green]✓ Removed {removed} session(s) older than {days} days[/green]")
