"""Sync engine — reconcile the memory and sessions folders with the index.

A run scans both source folders, skips files whose (hash, mtime, size) are
unchanged, chunks what changed, resolves all new chunk texts through the
embedding cache in shared batches, and rewrites each changed file in its own
transaction. Files that disappeared from disk are removed from the index.

Failures are isolated per file: a file whose read or embedding fails is
logged and counted, and the run carries on with the rest.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from loguru import logger

from recall.config import ChunkingCfg
from recall.db.models import Chunk, IndexedFile, MemorySource
from recall.db.repository import Repository, utc_now
from recall.db.schema import CURRENT_VERSION
from recall.embeddings.cache import EmbeddingCache
from recall.ingest import chunker_for
from recall.ingest.base import TextChunk, Tokenizer

INDEXABLE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".md", ".markdown", ".txt", ".json", ".yaml", ".yml", ".xml",
        ".cs", ".py", ".js", ".ts", ".html", ".css", ".sql",
        ".sh", ".ps1", ".bat", ".cmd",
    }
)

_MAX_SCAN_DEPTH = 10
# Chunks resolved per embedding round; files are grouped up to this size.
_EMBED_GROUP_CHUNKS = 256


class SyncPhase(str, Enum):
    SCANNING = "scanning"
    EMBEDDING = "embedding"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


@dataclass
class SyncOptions:
    """How a sync should run.

    Attributes:
        reason: Free-form trigger label (``manual``, ``watch``, ``startup``, ...).
        force: Re-chunk and re-embed every file, ignoring change detection.
        sources: Source folders to reconcile. Others are left untouched.
    """

    reason: str = "manual"
    force: bool = False
    sources: tuple[MemorySource, ...] = (MemorySource.MEMORY, MemorySource.SESSIONS)


@dataclass
class SyncProgress:
    phase: SyncPhase = SyncPhase.SCANNING
    current_file: str | None = None
    files_processed: int = 0
    total_files: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0

    @property
    def percent(self) -> float:
        if self.total_files == 0:
            return 100.0 if self.phase == SyncPhase.COMPLETE else 0.0
        return round(100.0 * self.files_processed / self.total_files, 1)


@dataclass
class FileFailure:
    path: str
    source: MemorySource
    error: str


@dataclass
class SyncReport:
    """Summary of one sync run."""

    reason: str = "manual"
    full: bool = False
    files_scanned: int = 0
    files_indexed: int = 0
    files_skipped: int = 0
    files_deleted: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0
    cache_hits: int = 0
    pending_chunks: int = 0
    cancelled: bool = False
    failures: list[FileFailure] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""

    @property
    def files_failed(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled


@dataclass
class ScannedFile:
    """A file found on disk during the scan phase."""

    path: Path
    rel_path: str  # POSIX path relative to its source root
    source: MemorySource


@dataclass
class _Pending:
    """A changed file waiting for its chunks to be embedded and written."""

    scanned: ScannedFile
    hash: str
    mtime: float
    size: int
    chunks: list[TextChunk]


ProgressCallback = Callable[[SyncProgress], None]


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def is_indexable(path: Path) -> bool:
    """True for non-hidden files with an indexable extension."""
    return not path.name.startswith(".") and path.suffix.lower() in INDEXABLE_EXTENSIONS


def scan_folder(root: Path, source: MemorySource) -> list[ScannedFile]:
    """Return indexable files under *root*, sorted by relative path.

    A missing folder yields an empty list (and so removes its files from the index).
    """
    if not root.is_dir():
        return []
    files = [
        ScannedFile(path=p, rel_path=p.relative_to(root).as_posix(), source=source)
        for p in _scan_dir(root, depth=0)
    ]
    files.sort(key=lambda f: f.rel_path)
    return files


def _scan_dir(directory: Path, depth: int) -> list[Path]:
    if depth > _MAX_SCAN_DEPTH:
        return []
    files: list[Path] = []
    try:
        entries = sorted(directory.iterdir())
    except PermissionError:
        logger.warning("Permission denied while scanning {}", directory)
        return []
    for entry in entries:
        if entry.name.startswith("."):
            continue
        if entry.is_file() and is_indexable(entry):
            files.append(entry)
        elif entry.is_dir() and not entry.is_symlink():
            files.extend(_scan_dir(entry, depth + 1))
    return files


def _read_file(path: Path) -> tuple[os.stat_result, bytes]:
    return path.stat(), path.read_bytes()


def _hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SyncEngine:
    """Incremental reconciler between the source folders and the index.

    Args:
        repo: Repository over the index database.
        cache: Embedding cache (its provider defines the embedding model).
        chunking: Chunking policy.
        tokenizer: Tokenizer used for every chunker.
        roots: Folder for each source.
    """

    def __init__(
        self,
        repo: Repository,
        cache: EmbeddingCache,
        chunking: ChunkingCfg,
        tokenizer: Tokenizer,
        roots: dict[MemorySource, Path],
    ) -> None:
        self._repo = repo
        self._cache = cache
        self._chunking = chunking
        self._tokenizer = tokenizer
        self._roots = roots

    def index_identity(self) -> dict[str, object]:
        """Everything that, when changed, invalidates every stored chunk."""
        provider = self._cache.provider
        return {
            "schema_version": CURRENT_VERSION,
            "provider": provider.provider_id,
            "model": provider.model,
            "dimensions": provider.dimensions,
            "tokenizer": self._tokenizer.name,
            "max_tokens": self._chunking.max_tokens,
            "overlap_tokens": self._chunking.overlap_tokens,
            "min_tokens": self._chunking.min_tokens,
            "markdown_aware": self._chunking.markdown_aware,
        }

    def needs_full_sync(self) -> bool:
        return self._repo.get_meta("index_identity") != self.index_identity()

    async def run(
        self,
        options: SyncOptions | None = None,
        progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncReport:
        """Reconcile the selected sources with the index and return a report.

        Cancellation (``cancel.set()``) is honoured between files; files
        already written stay committed and the run reports ``cancelled``.
        """
        options = options or SyncOptions()
        identity_changed = self.needs_full_sync()
        full = options.force or identity_changed
        if identity_changed and not options.force:
            logger.info("Index identity changed; running a full reindex")

        report = SyncReport(reason=options.reason, full=full, started_at=utc_now())
        state = SyncProgress()
        logger.info("Sync started (reason={}, full={})", options.reason, full)

        def emit(**changes: object) -> None:
            for key, value in changes.items():
                setattr(state, key, value)
            if progress is not None:
                progress(replace(state))

        def cancelled() -> bool:
            return cancel is not None and cancel.is_set()

        # ---- Scan + change detection ----
        scanned: list[ScannedFile] = []
        for source in options.sources:
            scanned.extend(await asyncio.to_thread(scan_folder, self._roots[source], source))
        report.files_scanned = len(scanned)
        emit(phase=SyncPhase.SCANNING, total_files=len(scanned))

        pending: list[_Pending] = []
        for item in scanned:
            if cancelled():
                report.cancelled = True
                break
            emit(current_file=item.rel_path)
            entry = await self._detect_change(item, full, report)
            if entry is None:
                emit(
                    files_processed=state.files_processed + 1,
                    files_skipped=report.files_skipped,
                    files_failed=report.files_failed,
                )
                continue
            pending.append(entry)

        # ---- Embed + write, in groups of files ----
        emit(phase=SyncPhase.EMBEDDING)
        for group in _group_by_chunks(pending, _EMBED_GROUP_CHUNKS):
            if cancelled():
                report.cancelled = True
                break
            await self._embed_and_write(group, report)
            emit(
                files_processed=state.files_processed + len(group),
                current_file=group[-1].scanned.rel_path,
                files_failed=report.files_failed,
                chunks_created=report.chunks_created,
                embeddings_generated=report.embeddings_generated,
            )

        # ---- Remove files that disappeared ----
        if not report.cancelled:
            emit(phase=SyncPhase.CLEANUP, current_file=None)
            report.files_deleted = self._delete_missing(options.sources, scanned)

        # ---- Metadata ----
        report.pending_chunks = self._repo.count_pending_chunks()
        report.finished_at = utc_now()
        meta: dict[str, object] = {
            "last_sync_at": report.finished_at,
            "dirty": not report.ok or report.pending_chunks > 0,
            "last_sync_failures": report.files_failed,
        }
        if full and not report.cancelled:
            meta["last_full_sync_at"] = report.finished_at
            meta["index_identity"] = self.index_identity()
        self._repo.set_meta(**meta)

        emit(phase=SyncPhase.COMPLETE, current_file=None)
        logger.info(
            "Sync finished: {} indexed, {} skipped, {} deleted, {} failed, {} chunks{}",
            report.files_indexed,
            report.files_skipped,
            report.files_deleted,
            report.files_failed,
            report.chunks_created,
            " (cancelled)" if report.cancelled else "",
        )
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _detect_change(
        self, item: ScannedFile, full: bool, report: SyncReport
    ) -> _Pending | None:
        """Read and hash *item*; return it for re-indexing or None if skipped/failed."""
        try:
            stat, data = await asyncio.to_thread(_read_file, item.path)
            text = data.decode("utf-8-sig")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read {}: {}", item.path, exc)
            report.failures.append(FileFailure(item.rel_path, item.source, str(exc)))
            return None

        file_hash = _hash_bytes(data)
        existing = self._repo.get_file(item.rel_path, item.source)
        if not full and existing is not None and existing.hash == file_hash:
            if existing.mtime != stat.st_mtime or existing.size != stat.st_size:
                self._repo.touch_file(existing.id, stat.st_mtime, stat.st_size)
            logger.debug("Unchanged: {}", item.rel_path)
            report.files_skipped += 1
            return None

        chunker = chunker_for(item.rel_path, self._chunking, self._tokenizer)
        chunks = chunker.chunk_text(text, item.rel_path)
        return _Pending(item, file_hash, stat.st_mtime, stat.st_size, chunks)

    async def _embed_and_write(self, group: list[_Pending], report: SyncReport) -> None:
        texts = [c.text for entry in group for c in entry.chunks]
        result = await self._cache.resolve_many(texts)
        report.cache_hits += result.hits
        report.embeddings_generated += result.computed

        model_key = self._cache.provider.model_key
        offset = 0
        for entry in group:
            rows: list[Chunk] = []
            errors: list[str] = []
            for i, tc in enumerate(entry.chunks):
                idx = offset + i
                vector = result.vectors.get(idx)
                if vector is None:
                    errors.append(str(result.errors.get(idx, "embedding missing")))
                rows.append(
                    Chunk(
                        path=entry.scanned.rel_path,
                        source=entry.scanned.source,
                        chunk_index=i,
                        start_line=tc.start_line,
                        end_line=tc.end_line,
                        hash=tc.hash,
                        text=tc.text,
                        model=model_key if vector is not None else "",
                        embedding=vector,
                        token_count=tc.token_count,
                    )
                )
            offset += len(entry.chunks)

            # An empty stored hash makes the next incremental sync retry this file.
            stored_hash = entry.hash if not errors else ""
            indexed = IndexedFile(
                path=entry.scanned.rel_path,
                source=entry.scanned.source,
                hash=stored_hash,
                mtime=entry.mtime,
                size=entry.size,
            )
            try:
                self._repo.replace_file(indexed, rows)
            except sqlite3.Error as exc:
                logger.error("Failed to write {}: {}", entry.scanned.rel_path, exc)
                report.failures.append(
                    FileFailure(entry.scanned.rel_path, entry.scanned.source, str(exc))
                )
                continue

            report.chunks_created += len(rows)
            if errors:
                logger.warning(
                    "{} of {} chunks of {} are pending embedding: {}",
                    len(errors),
                    len(rows),
                    entry.scanned.rel_path,
                    errors[0],
                )
                report.failures.append(
                    FileFailure(entry.scanned.rel_path, entry.scanned.source, errors[0])
                )
            else:
                report.files_indexed += 1
                logger.debug("Indexed {} ({} chunks)", entry.scanned.rel_path, len(rows))

    def _delete_missing(
        self, sources: tuple[MemorySource, ...], scanned: list[ScannedFile]
    ) -> int:
        present = {(f.source, f.rel_path) for f in scanned}
        deleted = 0
        for source in sources:
            for stored in self._repo.list_files(source):
                if (stored.source, stored.path) not in present:
                    self._repo.delete_file(stored.id)
                    logger.info("Removed {} from the index", stored.path)
                    deleted += 1
        return deleted


def _group_by_chunks(pending: list[_Pending], limit: int) -> list[list[_Pending]]:
    """Group consecutive files so each group holds roughly *limit* chunks."""
    groups: list[list[_Pending]] = []
    current: list[_Pending] = []
    count = 0
    for entry in pending:
        if current and count + len(entry.chunks) > limit:
            groups.append(current)
            current, count = [], 0
        current.append(entry)
        count += len(entry.chunks)
    if current:
        groups.append(current)
    return groups
