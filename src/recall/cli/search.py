"""recall search command."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel

from recall.cli.context import console, load_cli_config, open_manager
from recall.cli.errors import err_invalid_search
from recall.config import RecallConfig
from recall.exceptions import InvalidSearchOptions
from recall.search.hybrid import SearchOptions, SearchResult


def search_cmd(
    query: Annotated[str, typer.Argument(help="What to look for.")],
    max_results: Annotated[
        int | None,
        typer.Option("--max-results", "-n", help="Maximum results (default: search.max_results)."),
    ] = None,
    min_score: Annotated[
        float | None,
        typer.Option("--min-score", help="Minimum blended score in [0, 1]."),
    ] = None,
    no_sessions: Annotated[
        bool,
        typer.Option("--no-sessions", help="Exclude saved session transcripts."),
    ] = False,
    no_memory: Annotated[
        bool,
        typer.Option("--no-memory", help="Exclude memory notes."),
    ] = False,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Override paths.data_dir."),
    ] = None,
) -> None:
    """Hybrid (vector + keyword) search over indexed memory."""
    cfg = load_cli_config(data_dir)
    options = SearchOptions.from_config(cfg.search)
    if max_results is not None:
        options.max_results = max_results
    if min_score is not None:
        options.min_score = min_score
    options.include_sessions = not no_sessions
    options.include_memory_files = not no_memory

    try:
        options.validate()
    except InvalidSearchOptions as exc:
        console.print(err_invalid_search(str(exc)))
        raise typer.Exit(1) from exc

    try:
        results = asyncio.run(_run_search(cfg, query, options))
    except InvalidSearchOptions as exc:
        console.print(err_invalid_search(str(exc)))
        raise typer.Exit(1) from exc

    if not results:
        console.print("[yellow]No results.[/] Try a lower --min-score or run:  recall sync")
        return
    for rank, result in enumerate(results, start=1):
        _print_result(rank, result)


async def _run_search(
    cfg: RecallConfig, query: str, options: SearchOptions
) -> list[SearchResult]:
    manager = await open_manager(cfg, needs_embeddings=False)
    try:
        return await manager.search(query, options)
    finally:
        await manager.close()


def _print_result(rank: int, result: SearchResult) -> None:
    title = (
        f"[bold]{rank}.[/] {result.path}:{result.start_line}-{result.end_line}  "
        f"[dim]({result.source.value})[/]"
    )
    subtitle = (
        f"score {result.score:.3f} · vector {result.vector_score:.3f} · "
        f"text {result.text_score:.3f}"
    )
    console.print(Panel(result.snippet, title=title, subtitle=subtitle, expand=False))
