"""Tests for the forward-only migration runner."""

from __future__ import annotations

from recall.db.connection import Database
from recall.db.migrations import MIGRATIONS, current_version, run_migrations
from recall.db.schema import CURRENT_VERSION, initialize


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    return Database(tmp_path / "test.db").connect()


def _table_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
    ).fetchone() is not None


# --- Bootstrap ---

def test_run_migrations_creates_schema_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "schema_version")
    conn.close()


def test_current_version_zero_on_fresh_db(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    conn.execute("DELETE FROM schema_version")
    assert current_version(conn) == 0
    conn.close()


def test_run_migrations_records_latest_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert current_version(conn) == MIGRATIONS[-1][0] == CURRENT_VERSION
    conn.close()


# --- Tables ---

def test_v1_creates_all_tables(tmp_db):
    for table in ("files", "chunks", "chunks_fts", "embedding_cache", "meta"):
        assert _table_exists(tmp_db, table), table


def test_fts_uses_porter_tokenizer(tmp_db):
    sql = tmp_db.execute(
        "SELECT sql FROM sqlite_master WHERE name = 'chunks_fts'"
    ).fetchone()[0]
    assert "porter" in sql


# --- Idempotence ---

def test_run_migrations_twice_is_noop(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    rows = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert rows == len(MIGRATIONS)
    conn.close()


def test_initialize_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    initialize(conn)
    initialize(conn)
    assert current_version(conn) == CURRENT_VERSION
    conn.close()
