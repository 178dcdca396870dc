"""
Config command group for managing configuration.
"""

from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ....application.settings import CardsmithSettings
from ..output_formatter import OutputFormat, OutputFormatter
from .generate import load_settings

console = Console()
app = typer.Typer(help="Manage configuration")

SENSITIVE_KEYS = ("api_key", "password", "secret", "token")


def complete_config_keys(incomplete: str):
    """Auto-complete configuration keys."""
    return [k for k in CardsmithSettings.model_fields if k.startswith(incomplete)]


def masked_settings(settings: CardsmithSettings, show_sensitive: bool = False) -> dict:
    config_data = settings.model_dump(mode="json")
    if not show_sensitive:
        for key, value in config_data.items():
            # token_budget is a number, not a secret
            if key == "token_budget":
                continue
            if value and any(s in key.lower() for s in SENSITIVE_KEYS):
                config_data[key] = "*" * min(len(str(value)), 8)
    return config_data


@app.command("show")
def show_config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.TABLE, "--output", "-o", help="Output format"
    ),
    show_sensitive: bool = typer.Option(
        False, "--show-sensitive", help="Show sensitive values (like API keys)"
    ),
):
    """
    Show current configuration.

    Examples:
        cardsmith config show
        cardsmith config show --output yaml
    """
    settings = load_settings(config_file)
    config_data = masked_settings(settings, show_sensitive)

    if output_format != OutputFormat.TABLE:
        OutputFormatter.format_data(config_data, output_format)
        return

    table = Table(title="Cardsmith Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Description", style="dim")
    for field_name, field_info in CardsmithSettings.model_fields.items():
        value = config_data.get(field_name)
        if isinstance(value, list):
            value = ", ".join(str(item) for item in value)
        table.add_row(field_name, "" if value is None else str(value), field_info.description or "")
    console.print(table)


@app.command("set")
def set_config(
    key: str = typer.Argument(help="Configuration key", autocompletion=complete_config_keys),
    value: str = typer.Argument(help="Configuration value"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
):
    """
    Set a configuration value.

    Examples:
        cardsmith config set provider ollama
        cardsmith config set model_name llama3.1
        cardsmith config set max_iterations 30
    """
    settings = load_settings(config_file)
    if key not in CardsmithSettings.model_fields:
        console.print(f"[red]Error: Unknown configuration key '{key}'[/red]")
        console.print("Available keys:")
        for field_name in CardsmithSettings.model_fields:
            console.print(f"  - {field_name}")
        raise typer.Exit(1)

    converted: object = value
    if value.lower() in ("none", "null", ""):
        converted = None
    elif key == "required_outputs":
        converted = [item.strip() for item in value.split(",") if item.strip()]

    try:
        settings.update_setting(key, converted, config_path=config_file)
    except ValidationError as e:
        console.print(f"[red]Error: Invalid value '{value}' for {key}: {e.errors()[0]['msg']}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Set {key} = {getattr(settings, key)}[/green]")
