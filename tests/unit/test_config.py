"""Tests for the recall config loader."""

from __future__ import annotations

import stat
import warnings
from pathlib import Path

import pytest
import yaml

from recall.config import (
    ConfigError,
    RecallConfig,
    ensure_global_config,
    load_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in (
        "RECALL_DATA_DIR",
        "RECALL_EMBEDDING_PROVIDER",
        "RECALL_EMBEDDING_MODEL",
        "RECALL_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Defaults with no config files present
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path) -> None:
    """No config files → all hardcoded defaults."""
    missing_global = tmp_path / "nonexistent" / "config.yaml"
    cfg = load_config(project_dir=tmp_path, global_config_path=missing_global)

    assert cfg.embedding.provider == "openai"
    assert cfg.embedding.model == "text-embedding-3-small"
    assert cfg.chunking.max_tokens == 512
    assert cfg.chunking.overlap_tokens == 50
    assert cfg.search.max_results == 10
    assert cfg.search.min_score == pytest.approx(0.35)
    assert cfg.search.vector_weight == pytest.approx(0.7)
    assert cfg.watch.debounce_ms == 1000
    assert cfg.cache.max_entries == 50_000


def test_derived_paths_follow_data_dir() -> None:
    cfg = RecallConfig()
    cfg.paths.data_dir = "/srv/recall"
    assert cfg.memory_dir == Path("/srv/recall/memory")
    assert cfg.sessions_dir == Path("/srv/recall/sessions")
    assert cfg.db_path == Path("/srv/recall/recall.db")


def test_explicit_paths_override_data_dir() -> None:
    cfg = RecallConfig()
    cfg.paths.memory_dir = "/notes"
    cfg.paths.db = "/tmp/index.db"
    assert cfg.memory_dir == Path("/notes")
    assert cfg.db_path == Path("/tmp/index.db")


def test_data_dir_expands_user() -> None:
    assert "~" not in str(RecallConfig().data_dir)


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_load_config_global_overrides_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"provider": "ollama", "model": "nomic-embed-text"}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.embedding.provider == "ollama"
    assert cfg.embedding.model == "nomic-embed-text"
    assert cfg.search.max_results == 10


def test_load_config_global_empty_file(tmp_path: Path) -> None:
    """Empty global config file → defaults (no crash)."""
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("# nothing here\n", encoding="utf-8")

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.embedding.provider == "openai"


def test_load_config_project_partial_override(tmp_path: Path) -> None:
    """Per-project can override a single field; global values for other fields survive."""
    global_cfg = tmp_path / "global.yaml"
    _write_yaml(global_cfg, {"search": {"max_results": 20, "min_score": 0.5}})
    _write_yaml(tmp_path / "recall.yaml", {"search": {"max_results": 5}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.search.max_results == 5
    assert cfg.search.min_score == pytest.approx(0.5)


def test_env_overrides_files(tmp_path: Path, monkeypatch) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"embedding": {"provider": "openai"}})
    monkeypatch.setenv("RECALL_EMBEDDING_PROVIDER", "Ollama")
    monkeypatch.setenv("RECALL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("RECALL_LOG_LEVEL", "debug")

    cfg = load_config(project_dir=tmp_path, global_config_path=tmp_path / "missing.yaml")
    assert cfg.embedding.provider == "ollama"
    assert cfg.data_dir == tmp_path / "data"
    assert cfg.logging.level == "DEBUG"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_global_config_rejects_api_keys(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"api_key": "sk-secret"}})

    with pytest.raises(ConfigError, match="forbidden key 'embedding.api_key'"):
        load_config(project_dir=tmp_path, global_config_path=global_cfg)


def test_token_limits_are_not_mistaken_for_secrets(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"chunking": {"max_tokens": 256, "overlap_tokens": 16}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.chunking.max_tokens == 256


def test_unknown_section_warns(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"retrieval": {"top_k": 3}})
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        load_config(project_dir=tmp_path, global_config_path=tmp_path / "missing.yaml")
    assert any("retrieval" in str(w.message) for w in caught)


@pytest.mark.parametrize("data,match", [
    ({"search": {"vector_weight": 0.5, "text_weight": 0.6}}, "must equal 1.0"),
    ({"search": {"min_score": 2}}, "min_score"),
    ({"chunking": {"max_tokens": 100, "overlap_tokens": 100}}, "overlap_tokens"),
    ({"chunking": {"min_tokens": 600}}, "min_tokens"),
    ({"chunking": {"tokenizer": "bert"}}, "tokenizer"),
    ({"watch": {"debounce_ms": -5}}, "debounce_ms"),
    ({"embedding": {"batch_size": 0}}, "batch_size"),
])
def test_invalid_values_raise(tmp_path: Path, data: dict, match: str) -> None:
    _write_yaml(tmp_path / "recall.yaml", data)
    with pytest.raises(ConfigError, match=match):
        load_config(project_dir=tmp_path, global_config_path=tmp_path / "missing.yaml")


def test_config_error_is_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


# ---------------------------------------------------------------------------
# ensure_global_config
# ---------------------------------------------------------------------------


def test_ensure_global_config_creates_private_file(tmp_path: Path) -> None:
    target = tmp_path / ".recall" / "config.yaml"
    path = ensure_global_config(target)

    assert path == target
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    data = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert data["embedding"]["provider"] == "openai"


def test_ensure_global_config_keeps_existing(tmp_path: Path) -> None:
    target = tmp_path / "config.yaml"
    target.write_text("search:\n  max_results: 3\n", encoding="utf-8")
    ensure_global_config(target)
    assert "max_results: 3" in target.read_text(encoding="utf-8")


def test_generated_global_config_loads(tmp_path: Path) -> None:
    target = ensure_global_config(tmp_path / "config.yaml")
    cfg = load_config(project_dir=tmp_path, global_config_path=target)
    assert cfg.search.min_score == pytest.approx(0.35)
