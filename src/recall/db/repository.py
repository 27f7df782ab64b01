"""Repository pattern for all memory index database operations.

Single interface for: indexed files, chunks (with FTS5 sync), exhaustive
vector similarity, BM25 search, the embedding cache table, and index metadata.
The Sync Engine is the only writer of files/chunks; search only reads.
"""

from __future__ import annotations

import json
import math
import re
import sqlite3
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from recall.db.models import Chunk, IndexedFile, MemorySource
from recall.db.vectors import deserialize_vector, serialize_vector

# SQLite builds before 3.32 cap bound parameters at 999.
_IN_BATCH = 500

_CHUNK_COLUMNS = (
    "id, file_id, path, source, chunk_index, start_line, end_line, hash, model, "
    "text, embedding, token_count, updated_at"
)
_FILE_COLUMNS = "id, path, source, hash, mtime, size, indexed_at"

# Dropped from FTS queries unless nothing else is left.
_STOP_WORDS: frozenset[str] = frozenset(
    """a an and are as at be but by for from has have how i in is it its of on or
    that the this to was we what when where which who why will with you""".split()
)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with microseconds (sortable)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def build_fts_query(query: str) -> str | None:
    """Turn free text into an FTS5 MATCH expression of OR-ed quoted terms.

    FTS5 rejects most punctuation as syntax, so only word characters survive.
    Returns None when the query has no searchable terms.
    """
    terms = re.findall(r"\w+", query.lower())
    if not terms:
        return None
    kept = [t for t in terms if t not in _STOP_WORDS] or terms
    unique = list(dict.fromkeys(kept))
    return " OR ".join(f'"{t}"' for t in unique)


def _batched(items: Sequence[Any], size: int = _IN_BATCH) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class Repository:
    """Data access layer for the memory index.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see recall.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def get_file(self, path: str, source: MemorySource) -> IndexedFile | None:
        """Return the indexed file at *path* under *source*, or None."""
        row = self._conn.execute(
            f"SELECT {_FILE_COLUMNS} FROM files WHERE path = ? AND source = ?",
            (path, MemorySource(source).value),
        ).fetchone()
        return _row_to_file(row) if row else None

    def list_files(self, source: MemorySource | None = None) -> list[IndexedFile]:
        """Return indexed files ordered by path, optionally filtered by *source*."""
        if source is None:
            rows = self._conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM files ORDER BY source, path"
            ).fetchall()
        else:
            rows = self._conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM files WHERE source = ? ORDER BY path",
                (MemorySource(source).value,),
            ).fetchall()
        return [_row_to_file(r) for r in rows]

    def count_files(self, source: MemorySource | None = None) -> int:
        if source is None:
            return self._conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM files WHERE source = ?", (MemorySource(source).value,)
        ).fetchone()[0]

    def touch_file(self, file_id: int, mtime: float, size: int) -> None:
        """Refresh the stat fields of a file whose content hash did not change."""
        self._conn.execute(
            "UPDATE files SET mtime = ?, size = ? WHERE id = ?", (mtime, size, file_id)
        )
        self._conn.commit()

    def replace_file(self, file: IndexedFile, chunks: Sequence[Chunk]) -> int:
        """Upsert *file* and replace its whole chunk set in one transaction.

        Old chunks and their FTS rows are removed, then *chunks* are inserted
        with a shared ``updated_at``. Readers never observe a half-written file.

        Returns:
            The file's id.
        """
        now = utc_now()
        source = MemorySource(file.source).value
        try:
            row = self._conn.execute(
                "SELECT id FROM files WHERE path = ? AND source = ?", (file.path, source)
            ).fetchone()
            if row is None:
                cur = self._conn.execute(
                    """
                    INSERT INTO files (path, source, hash, mtime, size, indexed_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (file.path, source, file.hash, file.mtime, file.size, now),
                )
                file_id = cur.lastrowid
            else:
                file_id = row["id"]
                self._delete_chunks(file_id)
                self._conn.execute(
                    """
                    UPDATE files SET hash = ?, mtime = ?, size = ?, indexed_at = ?
                    WHERE id = ?
                    """,
                    (file.hash, file.mtime, file.size, now, file_id),
                )

            for chunk in chunks:
                blob = serialize_vector(chunk.embedding) if chunk.embedding else None
                cur = self._conn.execute(
                    """
                    INSERT INTO chunks (file_id, path, source, chunk_index, start_line,
                                        end_line, hash, model, text, embedding,
                                        token_count, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        file_id,
                        file.path,
                        source,
                        chunk.chunk_index,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.hash,
                        chunk.model if blob is not None else "",
                        chunk.text,
                        blob,
                        chunk.token_count,
                        now,
                    ),
                )
                # Keep FTS5 in sync with explicit rowid mapping
                self._conn.execute(
                    "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)",
                    (cur.lastrowid, chunk.text),
                )
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

        file.id = file_id
        file.indexed_at = now
        return file_id

    def delete_file(self, file_id: int) -> None:
        """Delete a file, its chunks (cascade) and their FTS entries."""
        try:
            self._delete_chunks(file_id)
            self._conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def clear_index(self) -> None:
        """Remove every file and chunk. The embedding cache is left untouched."""
        self._conn.execute("DELETE FROM chunks_fts")
        self._conn.execute("DELETE FROM chunks")
        self._conn.execute("DELETE FROM files")
        self._conn.commit()

    def _delete_chunks(self, file_id: int) -> None:
        # FTS5 does not take part in the foreign-key cascade.
        self._conn.execute(
            "DELETE FROM chunks_fts WHERE rowid IN (SELECT id FROM chunks WHERE file_id = ?)",
            (file_id,),
        )
        self._conn.execute("DELETE FROM chunks WHERE file_id = ?", (file_id,))

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def list_chunks(self, file_id: int) -> list[Chunk]:
        """Return the chunks of *file_id* in document order."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE file_id = ? ORDER BY chunk_index",
            (file_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_chunks(self, chunk_ids: Sequence[int]) -> dict[int, Chunk]:
        """Return ``{id: Chunk}`` for every id in *chunk_ids* that still exists."""
        result: dict[int, Chunk] = {}
        ids = list(chunk_ids)
        for batch in _batched(ids):
            placeholders = ",".join("?" * len(batch))
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})",
                list(batch),
            ).fetchall()
            for r in rows:
                result[r["id"]] = _row_to_chunk(r)
        return result

    def count_chunks(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def count_pending_chunks(self) -> int:
        """Number of chunks stored without an embedding (awaiting retry)."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE embedding IS NULL"
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Vector similarity (exhaustive scan)
    # ------------------------------------------------------------------

    def search_vec(
        self,
        embedding: Sequence[float],
        model: str,
        sources: Sequence[MemorySource],
    ) -> list[tuple[int, float]]:
        """Cosine similarity of *embedding* against every comparable chunk.

        Only chunks embedded with the same *model* and dimension count are
        scanned. Similarity is ``1 - cosine_distance`` clamped into [0, 1].

        Returns:
            ``[(chunk_id, similarity), ...]`` sorted best-first.
        """
        if not sources:
            return []
        blob = serialize_vector(embedding)
        source_values = [MemorySource(s).value for s in sources]
        placeholders = ",".join("?" * len(source_values))
        rows = self._conn.execute(
            f"""
            SELECT id, vec_distance_cosine(embedding, ?) AS distance
            FROM chunks
            WHERE embedding IS NOT NULL
              AND model = ?
              AND length(embedding) = ?
              AND source IN ({placeholders})
            """,
            (blob, model, len(blob), *source_values),
        ).fetchall()

        results: list[tuple[int, float]] = []
        for row in rows:
            distance = row["distance"]
            if distance is None or math.isnan(distance):
                continue
            results.append((row["id"], min(1.0, max(0.0, 1.0 - distance))))
        results.sort(key=lambda item: item[1], reverse=True)
        return results

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def search_fts(
        self,
        query: str,
        sources: Sequence[MemorySource],
        limit: int | None = None,
    ) -> list[tuple[int, float]]:
        """BM25 full-text search. Returns (chunk_id, score) sorted best-first.

        bm25() returns negative values; lower (more negative) = better match.
        The score returned here is ``-bm25`` so that higher means better.
        """
        fts_query = build_fts_query(query)
        if fts_query is None or not sources:
            return []
        source_values = [MemorySource(s).value for s in sources]
        placeholders = ",".join("?" * len(source_values))
        sql = f"""
            SELECT c.id AS id, bm25(chunks_fts) AS score
            FROM chunks_fts
            JOIN chunks c ON c.id = chunks_fts.rowid
            WHERE chunks_fts MATCH ?
              AND c.source IN ({placeholders})
            ORDER BY score
        """
        params: list[Any] = [fts_query, *source_values]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [(row["id"], -row["score"]) for row in rows]

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    def get_cache_entries(
        self, provider: str, model: str, text_hashes: Sequence[str]
    ) -> dict[str, tuple[bytes, int]]:
        """Return ``{text_hash: (blob, dims)}`` for every cached hash."""
        found: dict[str, tuple[bytes, int]] = {}
        hashes = list(dict.fromkeys(text_hashes))
        for batch in _batched(hashes):
            placeholders = ",".join("?" * len(batch))
            rows = self._conn.execute(
                f"""
                SELECT text_hash, embedding, dims FROM embedding_cache
                WHERE provider = ? AND model = ? AND text_hash IN ({placeholders})
                """,
                (provider, model, *batch),
            ).fetchall()
            for r in rows:
                found[r["text_hash"]] = (r["embedding"], r["dims"])
        return found

    def put_cache_entries(
        self, provider: str, model: str, entries: Sequence[tuple[str, bytes, int]]
    ) -> None:
        """Insert ``(text_hash, blob, dims)`` entries. Existing keys are kept as-is."""
        if not entries:
            return
        now = utc_now()
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO embedding_cache
                (provider, model, text_hash, embedding, dims, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [(provider, model, h, blob, dims, now) for h, blob, dims in entries],
        )
        self._conn.commit()

    def delete_cache_entries(
        self, provider: str, model: str, text_hashes: Sequence[str]
    ) -> None:
        for batch in _batched(list(text_hashes)):
            placeholders = ",".join("?" * len(batch))
            self._conn.execute(
                f"""
                DELETE FROM embedding_cache
                WHERE provider = ? AND model = ? AND text_hash IN ({placeholders})
                """,
                (provider, model, *batch),
            )
        self._conn.commit()

    def count_cache_entries(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]

    def evict_cache(self, max_entries: int = 0, max_age_days: int = 0) -> int:
        """Drop cache entries older than *max_age_days*, then the oldest beyond *max_entries*.

        A zero limit disables that rule. Returns the number of rows deleted.
        """
        deleted = 0
        if max_age_days > 0:
            cutoff = (
                datetime.now(timezone.utc) - timedelta(days=max_age_days)
            ).isoformat(timespec="microseconds")
            deleted += self._conn.execute(
                "DELETE FROM embedding_cache WHERE created_at < ?", (cutoff,)
            ).rowcount
        if max_entries > 0:
            deleted += self._conn.execute(
                """
                DELETE FROM embedding_cache WHERE rowid IN (
                    SELECT rowid FROM embedding_cache
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (max_entries,),
            ).rowcount
        self._conn.commit()
        return deleted

    def clear_cache(self) -> None:
        self._conn.execute("DELETE FROM embedding_cache")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Index metadata
    # ------------------------------------------------------------------

    def get_meta(self, key: str, default: Any = None) -> Any:
        """Return the JSON-decoded value stored under *key*, or *default*."""
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else default

    def set_meta(self, **values: Any) -> None:
        """Upsert one or more metadata keys in a single commit."""
        self._conn.executemany(
            """
            INSERT INTO meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            [(k, json.dumps(v)) for k, v in values.items()],
        )
        self._conn.commit()


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_file(row: sqlite3.Row) -> IndexedFile:
    return IndexedFile(
        id=row["id"],
        path=row["path"],
        source=MemorySource(row["source"]),
        hash=row["hash"],
        mtime=row["mtime"],
        size=row["size"],
        indexed_at=row["indexed_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    blob = row["embedding"]
    return Chunk(
        id=row["id"],
        file_id=row["file_id"],
        path=row["path"],
        source=MemorySource(row["source"]),
        chunk_index=row["chunk_index"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        hash=row["hash"],
        model=row["model"],
        text=row["text"],
        embedding=deserialize_vector(blob) if blob is not None else None,
        token_count=row["token_count"],
        updated_at=row["updated_at"],
    )
