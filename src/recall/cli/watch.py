"""recall watch command — sync once, then keep the index fresh until Ctrl+C."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from recall.cli.context import console, load_cli_config, open_manager
from recall.config import RecallConfig
from recall.sync.engine import SyncOptions


def watch_cmd(
    debounce_ms: Annotated[
        int | None,
        typer.Option("--debounce-ms", help="Quiet period before a sync (default: watch.debounce_ms)."),
    ] = None,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Override paths.data_dir."),
    ] = None,
) -> None:
    """Watch the memory and sessions folders and re-index on change."""
    cfg = load_cli_config(data_dir)
    cfg.watch.enabled = True
    if debounce_ms is not None:
        cfg.watch.debounce_ms = debounce_ms
    try:
        asyncio.run(_watch(cfg))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/]")


async def _watch(cfg: RecallConfig) -> None:
    manager = await open_manager(cfg)
    try:
        report = await manager.sync(SyncOptions(reason="startup"))
        console.print(
            f"[green]✓[/] Initial sync: {report.files_indexed} indexed, "
            f"{report.files_skipped} unchanged, {report.files_failed} failed"
        )
        manager.start_watching()
        console.print(
            f"Watching {cfg.memory_dir} and {cfg.sessions_dir} "
            f"(debounce {cfg.watch.debounce_ms} ms). Press Ctrl+C to stop."
        )
        await asyncio.Event().wait()
    finally:
        await manager.close()
