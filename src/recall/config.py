"""Recall configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (RECALL_DATA_DIR, RECALL_EMBEDDING_PROVIDER,
                             RECALL_EMBEDDING_MODEL, RECALL_LOG_LEVEL)
  3. Per-project recall.yaml  (in the working directory)
  4. Global ~/.recall/config.yaml  (no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from recall.exceptions import ConfigError

__all__ = [
    "CacheCfg",
    "ChunkingCfg",
    "ConfigError",
    "EmbeddingCfg",
    "LoggingCfg",
    "PathsCfg",
    "RecallConfig",
    "SearchCfg",
    "WatchCfg",
    "ensure_global_config",
    "load_config",
]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".recall"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "recall.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or overlap_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["paths", "embedding", "chunking", "search", "watch", "cache", "logging"]
)

_WEIGHT_TOLERANCE = 1e-6


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class PathsCfg:
    """Filesystem locations (recall.yaml: paths:).

    ``memory_dir``, ``sessions_dir`` and ``db`` default to folders inside
    ``data_dir`` when left unset.
    """

    data_dir: str = "~/.recall/data"
    memory_dir: str | None = None
    sessions_dir: str | None = None
    db: str | None = None


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (recall.yaml: embedding:)."""

    provider: str = "openai"  # openai | azure | ollama
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    api_base: str | None = None
    api_version: str | None = None
    batch_size: int = 64
    concurrency: int = 2
    max_retries: int = 3
    timeout: float = 60.0


@dataclass
class ChunkingCfg:
    """Chunking policy (recall.yaml: chunking:)."""

    max_tokens: int = 512
    overlap_tokens: int = 50
    min_tokens: int = 50
    markdown_aware: bool = True
    tokenizer: str = "tiktoken"  # tiktoken | approx
    encoding: str = "cl100k_base"


@dataclass
class SearchCfg:
    """Default hybrid search options (recall.yaml: search:)."""

    max_results: int = 10
    min_score: float = 0.35
    vector_weight: float = 0.7
    text_weight: float = 0.3
    snippet_chars: int = 500


@dataclass
class WatchCfg:
    """File watcher settings (recall.yaml: watch:)."""

    enabled: bool = True
    debounce_ms: int = 1000


@dataclass
class CacheCfg:
    """Embedding cache eviction (recall.yaml: cache:). Zero disables a limit."""

    max_entries: int = 50_000
    max_age_days: int = 0


@dataclass
class LoggingCfg:
    """Loguru sink settings (recall.yaml: logging:)."""

    level: str = "INFO"
    file: str | None = None


@dataclass
class RecallConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    paths: PathsCfg = field(default_factory=PathsCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    search: SearchCfg = field(default_factory=SearchCfg)
    watch: WatchCfg = field(default_factory=WatchCfg)
    cache: CacheCfg = field(default_factory=CacheCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)

    @property
    def data_dir(self) -> Path:
        return Path(self.paths.data_dir).expanduser()

    @property
    def memory_dir(self) -> Path:
        if self.paths.memory_dir:
            return Path(self.paths.memory_dir).expanduser()
        return self.data_dir / "memory"

    @property
    def sessions_dir(self) -> Path:
        if self.paths.sessions_dir:
            return Path(self.paths.sessions_dir).expanduser()
        return self.data_dir / "sessions"

    @property
    def db_path(self) -> Path:
        if self.paths.db:
            return Path(self.paths.db).expanduser()
        return self.data_dir / "recall.db"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: RecallConfig) -> None:
    """Raise ConfigError if *cfg* holds values no component can work with."""
    ch = cfg.chunking
    if ch.max_tokens < 1:
        raise ConfigError(f"chunking.max_tokens must be >= 1, got {ch.max_tokens}")
    if not 0 <= ch.overlap_tokens < ch.max_tokens:
        raise ConfigError(
            f"chunking.overlap_tokens must be in [0, max_tokens), got {ch.overlap_tokens}"
        )
    if not 0 <= ch.min_tokens <= ch.max_tokens:
        raise ConfigError(
            f"chunking.min_tokens must be in [0, max_tokens], got {ch.min_tokens}"
        )
    if ch.tokenizer not in ("tiktoken", "approx"):
        raise ConfigError(
            f"chunking.tokenizer must be 'tiktoken' or 'approx', got '{ch.tokenizer}'"
        )

    s = cfg.search
    if s.vector_weight < 0 or s.text_weight < 0:
        raise ConfigError("search weights must be non-negative")
    if abs(s.vector_weight + s.text_weight - 1.0) > _WEIGHT_TOLERANCE:
        raise ConfigError(
            f"search.vector_weight + search.text_weight must equal 1.0, "
            f"got {s.vector_weight + s.text_weight}"
        )
    if not 0.0 <= s.min_score <= 1.0:
        raise ConfigError(f"search.min_score must be in [0, 1], got {s.min_score}")

    if cfg.watch.debounce_ms < 0:
        raise ConfigError(f"watch.debounce_ms must be >= 0, got {cfg.watch.debounce_ms}")

    e = cfg.embedding
    if e.batch_size < 1 or e.concurrency < 1:
        raise ConfigError("embedding.batch_size and embedding.concurrency must be >= 1")
    if e.dimensions < 1:
        raise ConfigError(f"embedding.dimensions must be >= 1, got {e.dimensions}")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _cfg_from_dict(data: dict[str, Any]) -> RecallConfig:
    """Build a *RecallConfig* from a merged raw YAML dict."""
    cfg = RecallConfig()

    if "paths" in data:
        p = data["paths"] or {}
        cfg.paths = PathsCfg(
            data_dir=str(p.get("data_dir", cfg.paths.data_dir)),
            memory_dir=_opt_str(p.get("memory_dir")),
            sessions_dir=_opt_str(p.get("sessions_dir")),
            db=_opt_str(p.get("db")),
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        cfg.embedding = EmbeddingCfg(
            provider=str(e.get("provider", cfg.embedding.provider)).lower(),
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            api_base=_opt_str(e.get("api_base")),
            api_version=_opt_str(e.get("api_version")),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
            concurrency=int(e.get("concurrency", cfg.embedding.concurrency)),
            max_retries=int(e.get("max_retries", cfg.embedding.max_retries)),
            timeout=float(e.get("timeout", cfg.embedding.timeout)),
        )

    if "chunking" in data:
        c = data["chunking"] or {}
        cfg.chunking = ChunkingCfg(
            max_tokens=int(c.get("max_tokens", cfg.chunking.max_tokens)),
            overlap_tokens=int(c.get("overlap_tokens", cfg.chunking.overlap_tokens)),
            min_tokens=int(c.get("min_tokens", cfg.chunking.min_tokens)),
            markdown_aware=bool(c.get("markdown_aware", cfg.chunking.markdown_aware)),
            tokenizer=str(c.get("tokenizer", cfg.chunking.tokenizer)).lower(),
            encoding=str(c.get("encoding", cfg.chunking.encoding)),
        )

    if "search" in data:
        s = data["search"] or {}
        cfg.search = SearchCfg(
            max_results=int(s.get("max_results", cfg.search.max_results)),
            min_score=float(s.get("min_score", cfg.search.min_score)),
            vector_weight=float(s.get("vector_weight", cfg.search.vector_weight)),
            text_weight=float(s.get("text_weight", cfg.search.text_weight)),
            snippet_chars=int(s.get("snippet_chars", cfg.search.snippet_chars)),
        )

    if "watch" in data:
        w = data["watch"] or {}
        cfg.watch = WatchCfg(
            enabled=bool(w.get("enabled", cfg.watch.enabled)),
            debounce_ms=int(w.get("debounce_ms", cfg.watch.debounce_ms)),
        )

    if "cache" in data:
        k = data["cache"] or {}
        cfg.cache = CacheCfg(
            max_entries=int(k.get("max_entries", cfg.cache.max_entries)),
            max_age_days=int(k.get("max_age_days", cfg.cache.max_age_days)),
        )

    if "logging" in data:
        lg = data["logging"] or {}
        cfg.logging = LoggingCfg(
            level=str(lg.get("level", cfg.logging.level)).upper(),
            file=_opt_str(lg.get("file")),
        )

    return cfg


def _apply_env_overrides(cfg: RecallConfig) -> RecallConfig:
    """Apply RECALL_* environment variable overrides (layer 2)."""
    if data_dir := os.environ.get("RECALL_DATA_DIR"):
        cfg.paths.data_dir = data_dir
    if provider := os.environ.get("RECALL_EMBEDDING_PROVIDER"):
        cfg.embedding.provider = provider.lower()
    if model := os.environ.get("RECALL_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if level := os.environ.get("RECALL_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> RecallConfig:
    """Load and return a merged *RecallConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *recall.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged and validated *RecallConfig*.

    Raises:
        ConfigError: If global config contains API-key-like fields, or if any
            merged value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    validate_config(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.recall/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# Recall global configuration.\n"
            "# NEVER store API keys here — use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "#   export AZURE_API_KEY=...\n"
            "\n"
            "embedding:\n"
            "  provider: openai\n"
            "  model: text-embedding-3-small\n"
            "\n"
            "search:\n"
            "  max_results: 10\n"
            "  min_score: 0.35\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
