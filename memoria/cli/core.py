"""Shared CLI application context and setup helpers."""

from __future__ import annotations

import sys

import typer
from loguru import logger
from rich.console import Console

from memoria import __logo__, __version__

app = typer.Typer(
    name="memoria",
    help=f"{__logo__} memoria - knowledge pipeline for team chat",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{__logo__} memoria v{__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-V", callback=version_callback, is_eager=True),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """memoria - knowledge pipeline for team chat."""
    configure_logging(verbose)
