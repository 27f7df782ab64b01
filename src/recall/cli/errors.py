"""Recall rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from recall.cli.errors import err_no_api_key
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from pathlib import Path


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-...\n"
        "  Or use a local model:  export RECALL_EMBEDDING_PROVIDER=ollama"
    )


def err_config(message: str) -> str:
    """Invalid or forbidden configuration value."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix recall.yaml or ~/.recall/config.yaml and retry."
    )


def err_invalid_search(message: str) -> str:
    """Search options rejected before running the query."""
    return (
        f"[red]Error:[/] Invalid search options: {message}\n"
        "  Example:  recall search \"deploy key\" --max-results 5 --min-score 0.3"
    )


def err_no_index(db_path: Path) -> str:
    """The index database has never been created."""
    return (
        f"[red]Error:[/] No memory index found at '{db_path}'.\n"
        "  Run:  recall sync"
    )


def err_sync_failures(count: int) -> str:
    """Some files could not be indexed."""
    noun = "file" if count == 1 else "files"
    return (
        f"[yellow]Warning:[/] {count} {noun} could not be fully indexed.\n"
        "  They stay searchable by text and are retried on the next:  recall sync"
    )
