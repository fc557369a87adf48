"""coachstream CLI entry point."""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from coachstream import __version__
from coachstream.cli.ask_cmd import ask
from coachstream.cli.metrics_cmd import metrics

app = typer.Typer(
    name="coachstream",
    help="Resilient streaming pipeline for coaching replies",
    no_args_is_help=True,
)

# Register subcommands
app.command()(ask)
app.command()(metrics)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"coachstream {__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    """Route library logging through rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False, "-V", "--verbose", help="Log session transitions and retries."
    ),
) -> None:
    """Resilient streaming pipeline for coaching replies."""
    configure_logging(verbose)
