"""Shared setup for CLI commands: config loading, logging and the manager."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from recall.cli.errors import err_config, err_no_api_key
from recall.config import RecallConfig, load_config
from recall.exceptions import ConfigError, EmbeddingError
from recall.logging import configure_logging
from recall.manager import MemoryManager

console = Console()


def load_cli_config(data_dir: Path | None = None, *, verbose: bool = False) -> RecallConfig:
    """Load config, apply CLI overrides and configure logging; exit(1) on ConfigError."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    if data_dir is not None:
        cfg.paths.data_dir = str(data_dir)
    level = "DEBUG" if verbose else cfg.logging.level
    configure_logging(level, cfg.logging.file)
    return cfg


async def open_manager(cfg: RecallConfig, *, needs_embeddings: bool = True) -> MemoryManager:
    """Initialise a manager; exit(1) with an actionable message on setup errors."""
    manager = MemoryManager(cfg)
    try:
        await manager.initialize()
        if needs_embeddings:
            manager.provider.check_api_key()
    except ConfigError as exc:
        await manager.close()
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    except EmbeddingError as exc:
        await manager.close()
        console.print(err_no_api_key(exc.provider or cfg.embedding.provider))
        raise typer.Exit(1) from exc
    return manager
