"""
Main CLI entry point for Cardsmith.
"""

import logging
import os
import sys

import structlog
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.traceback import install

from ... import __version__
from ...application.settings import CardsmithSettings
from .commands import generate
from .commands.config import app as config_app
from .commands.sessions import app as sessions_app

# Load environment variables from .env file
load_dotenv()

install()

console = Console()

app = typer.Typer(
    name="cardsmith",
    help="Cardsmith - agent-driven character card and worldbook generation",
    context_settings={"help_option_names": ["-h", "--help"]},
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("generate")(generate.generate)
app.command("resume")(generate.resume)
app.command("status")(generate.status)
app.add_typer(sessions_app, name="sessions", help="Manage generation sessions")
app.add_typer(config_app, name="config", help="Manage configuration")


def setup_logging(debug: bool = False, log_level: str = "WARNING") -> None:
    """Configure structlog for console or JSON output.

    ``--debug`` (or ``CARDSMITH_DEBUG``) wins over the configured ``log_level``.
    """
    debug = debug or bool(os.getenv("CARDSMITH_DEBUG"))
    level = logging.DEBUG if debug else logging.getLevelNamesMapping()[log_level.upper()]
    logging.basicConfig(level=level, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


@app.command("version")
def version():
    """Show version information."""
    console.print(f"Cardsmith version {__version__}")


@app.callback()
def main_callback(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """
    Cardsmith - agent-driven character card and worldbook generation.

    Use --help with any command to get detailed information and examples.
    """
    ctx.meta["debug"] = debug
    setup_logging(debug=debug, log_level=CardsmithSettings.load().log_level)


def cli_main():
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        if "--debug" in sys.argv:
            console.print_exception()
        else:
            console.print(f"[red]Error: {e}[/red]")
            console.print("[dim]Use --debug for detailed error information[/dim]")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
