"""Recall CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from recall.cli.search import search_cmd
from recall.cli.sessions import sessions_cmd
from recall.cli.status import status_cmd
from recall.cli.sync import sync_cmd
from recall.cli.watch import watch_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("recall")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"recall {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="recall",
    help=(
        "Recall — local semantic memory for agents.\n\n"
        "  recall sync     Index new and changed notes and transcripts.\n"
        "  recall search   Hybrid vector + keyword search over memory."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Recall — local semantic memory for agents."""


app.command("sync")(sync_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.command("watch")(watch_cmd)
app.command("sessions")(sessions_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Recall version."""
    typer.echo(f"recall {_version()}")


if __name__ == "__main__":
    app()
