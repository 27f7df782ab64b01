"""recall sessions command — list saved conversation transcripts."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from recall.cli.context import console, load_cli_config
from recall.sessions import SessionStore


def sessions_cmd(
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Show at most this many sessions."),
    ] = 20,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Override paths.data_dir."),
    ] = None,
) -> None:
    """List saved sessions, newest first."""
    cfg = load_cli_config(data_dir)
    sessions = SessionStore(cfg.sessions_dir).list()
    if not sessions:
        console.print(f"[yellow]No sessions found in {cfg.sessions_dir}.[/]")
        return

    table = Table(title=f"Sessions ({len(sessions)})")
    table.add_column("Key")
    table.add_column("Title")
    table.add_column("Started")
    table.add_column("Messages", justify="right")
    for s in sessions[:limit]:
        started = s.started_at.strftime("%Y-%m-%d %H:%M") if s.started_at else "—"
        table.add_row(s.session_key, s.title, started, str(s.message_count))
    console.print(table)
