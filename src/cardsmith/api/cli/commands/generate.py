"""
Generation commands: generate, resume and status.
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Prompt

from ....application.service import GenerationService, ProgressUpdate
from ....application.settings import CardsmithSettings
from ....core.domain.engine import EngineOutcome
from ....core.domain.models import ProviderKind
from ..output_formatter import OutputFormat, OutputFormatter

console = Console()

EVENT_STYLES = {
    "task_started": "cyan",
    "task_completed": "green",
    "task_failed": "red",
    "replan": "yellow",
    "waiting_user": "magenta",
}


def load_settings(config_file: Optional[Path] = None) -> CardsmithSettings:
    if config_file:
        return CardsmithSettings.load_from_file(config_file)
    return CardsmithSettings.load()


def ask_user(prompt: str, choices: Optional[list[str]]) -> str:
    """Blocking console prompt used as the engine's user-input callback."""
    console.print(f"\n[bold magenta]?[/bold magenta] {prompt}")
    if choices:
        for index, choice in enumerate(choices, start=1):
            console.print(f"  [cyan]{index}.[/cyan] {choice}")
        answer = Prompt.ask("Your choice (number or text)")
        if answer.isdigit() and 1 <= int(answer) <= len(choices):
            return choices[int(answer) - 1]
        return answer
    return Prompt.ask("Your answer")


def show_progress(update: ProgressUpdate) -> None:
    if update.event_type in ("started", "waiting_user"):
        return
    style = EVENT_STYLES.get(update.event_type, "dim")
    label = update.event_type.replace("_", " ")
    console.print(f"[{style}]• {label}:[/{style}] {update.message}")


def report_outcome(outcome: EngineOutcome, output_format: OutputFormat) -> None:
    if outcome.success:
        console.print(
            f"\n[bold green]✓ Generation completed[/bold green] "
            f"[dim]({outcome.iterations} iterations, session {outcome.session_id})[/dim]"
        )
        OutputFormatter.format_output(outcome.output or {}, output_format)
        return

    console.print(f"\n[bold red]✗ Generation stopped:[/bold red] {outcome.error}")
    if outcome.resumable:
        console.print(f"[dim]Resume with: cardsmith resume {outcome.session_id}[/dim]")
    raise typer.Exit(1)


def generate(
    request: str = typer.Argument(help="What to create, in plain words"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Session title"),
    provider: Optional[ProviderKind] = typer.Option(
        None, "--provider", "-p", help="LLM provider (overrides settings)"
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name (overrides settings)"),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", help="Iteration budget for this run"
    ),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.TABLE, "--output", "-o", help="Output format"
    ),
):
    """
    Start a new generation session.

    Examples:
        cardsmith generate "A sardonic lighthouse keeper in a drowned world"
        cardsmith generate "Cyberpunk courier" --provider ollama --model llama3.1
    """
    settings = load_settings(config_file)
    if max_iterations:
        settings.max_iterations = max_iterations
    model_config = settings.to_model_config()
    if provider:
        model_config.provider = provider
    if model:
        model_config.model_name = model

    console.print(f"[bold blue]Generating:[/bold blue] {request}")
    console.print(
        f"[dim]Model: {model_config.provider.value}/{model_config.model_name}[/dim]"
    )

    service = GenerationService(settings)
    outcome = asyncio.run(
        service.start_generation(
            request,
            title=title,
            model_config=model_config,
            user_input_callback=ask_user,
            progress_callback=show_progress,
        )
    )
    report_outcome(outcome, output_format)


def resume(
    session_id: str = typer.Argument(help="Session ID"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.TABLE, "--output", "-o", help="Output format"
    ),
):
    """
    Resume a stopped session.

    Examples:
        cardsmith resume 1b4e28ba-2fa1-11d2-883f-0016d3cca427
    """
    service = GenerationService(load_settings(config_file))
    console.print(f"[bold blue]Resuming session:[/bold blue] {session_id}")
    outcome = asyncio.run(
        service.resume_generation(
            session_id, user_input_callback=ask_user, progress_callback=show_progress
        )
    )
    report_outcome(outcome, output_format)


def status(
    session_id: str = typer.Argument(help="Session ID"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.TABLE, "--output", "-o", help="Output format"
    ),
):
    """
    Show the status of a session.

    Examples:
        cardsmith status 1b4e28ba-2fa1-11d2-883f-0016d3cca427 --output json
    """
    service = GenerationService(load_settings(config_file))
    info = asyncio.run(service.get_status(session_id))
    OutputFormatter.format_data(info, output_format, f"Session {session_id}")
