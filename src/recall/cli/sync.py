"""recall sync command.

Reconciles the memory and sessions folders with the index, showing a rich
progress bar driven by the engine's progress callback.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from recall.cli.context import console, load_cli_config, open_manager
from recall.cli.errors import err_sync_failures
from recall.config import RecallConfig
from recall.db.models import MemorySource
from recall.sync.engine import SyncOptions, SyncProgress, SyncReport


def sync_cmd(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Re-chunk and re-embed every file."),
    ] = False,
    source: Annotated[
        list[MemorySource] | None,
        typer.Option("--source", "-s", help="Only sync this source (repeatable)."),
    ] = None,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Override paths.data_dir."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging."),
    ] = False,
) -> None:
    """Index new and changed files; drop deleted ones."""
    cfg = load_cli_config(data_dir, verbose=verbose)
    options = SyncOptions(
        reason="cli",
        force=force,
        sources=tuple(source) if source else (MemorySource.MEMORY, MemorySource.SESSIONS),
    )
    report = asyncio.run(_run_sync(cfg, options))
    _print_report(report)
    if report.failures:
        console.print(err_sync_failures(report.files_failed))
        raise typer.Exit(1)


async def _run_sync(cfg: RecallConfig, options: SyncOptions) -> SyncReport:
    manager = await open_manager(cfg)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("[dim]{task.fields[current]}[/dim]"),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Syncing…", total=None, current="")

            def _on_progress(state: SyncProgress) -> None:
                prog.update(
                    task,
                    description=f"{state.phase.value.capitalize()}…",
                    total=state.total_files or None,
                    completed=state.files_processed,
                    current=state.current_file or "",
                )

            return await manager.sync(options, progress=_on_progress)
    finally:
        await manager.close()


def _print_report(report: SyncReport) -> None:
    mode = "full" if report.full else "incremental"
    console.print(
        f"[green]✓[/] Sync complete ({mode}): "
        f"{report.files_indexed} indexed · {report.files_skipped} unchanged · "
        f"{report.files_deleted} removed · {report.chunks_created} chunks · "
        f"{report.embeddings_generated} new embeddings ({report.cache_hits} cached)"
    )
    if report.cancelled:
        console.print("[yellow]Sync was cancelled before completion.[/]")
    if report.failures:
        table = Table(title="Failed files", show_lines=False)
        table.add_column("Source")
        table.add_column("Path")
        table.add_column("Error", overflow="fold")
        for failure in report.failures:
            table.add_row(failure.source.value, failure.path, failure.error)
        console.print(table)
