"""recall status command.

Shows index statistics, embedding configuration and sync state.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel

from recall.cli.context import console, load_cli_config, open_manager
from recall.cli.errors import err_no_index
from recall.config import RecallConfig
from recall.manager import MemoryStatus


def status_cmd(
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Override paths.data_dir."),
    ] = None,
) -> None:
    """Show memory index status."""
    cfg = load_cli_config(data_dir)
    if not cfg.db_path.exists():
        console.print(err_no_index(cfg.db_path))
        raise typer.Exit(1)

    status = asyncio.run(_load_status(cfg))
    _show_index_panel(cfg, status)
    _show_embedding_panel(status)


async def _load_status(cfg: RecallConfig) -> MemoryStatus:
    manager = await open_manager(cfg, needs_embeddings=False)
    try:
        return manager.get_status()
    finally:
        await manager.close()


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_index_panel(cfg: RecallConfig, status: MemoryStatus) -> None:
    size_mb = status.database_size_bytes / (1024 * 1024)
    dirty = "[yellow]✗ needs sync[/]" if status.is_dirty else "[green]✓ up to date[/]"
    lines = [
        f"Database:  {status.database_path} ({size_mb:.1f} MB)",
        f"Memory:    {cfg.memory_dir}",
        f"Sessions:  {cfg.sessions_dir}",
        "",
        f"Files: [bold]{status.total_files}[/]  "
        f"(memory {status.memory_files}, sessions {status.session_files})  |  "
        f"Chunks: [bold]{status.total_chunks:,}[/]",
        f"Pending embeddings: {status.pending_chunks}",
        f"Last sync: {status.last_sync_at or 'never'}  {dirty}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Memory Index[/]", expand=False))


def _show_embedding_panel(status: MemoryStatus) -> None:
    lines = [
        f"Provider:  {status.embedding_provider}",
        f"Model:     {status.embedding_model}",
        f"Cached embeddings: {status.cached_embeddings:,}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Embeddings[/]", expand=False))
