"""Memory manager — the single entry point the agent talks to.

Owns the database connection and wires the tokenizer, embedding provider,
embedding cache, sync engine, hybrid search, session store and file watcher
together. All sync/watch state lives on the instance, so several managers
over different data directories can coexist in one process.

Concurrency model:
- At most one sync runs at a time. Explicit ``sync()`` calls queue behind
  the running one (the lock is FIFO).
- Watcher-triggered syncs are coalesced: while one is already waiting for
  the lock, further notifications are dropped.
- ``search()`` never waits for a sync; it sees either the pre-sync index or
  a partially synced one, but never a half-written file.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from recall.config import RecallConfig
from recall.db.connection import Database
from recall.db.models import MemorySource
from recall.db.repository import Repository
from recall.db.schema import initialize
from recall.embeddings.cache import EmbeddingCache
from recall.embeddings.provider import EmbeddingProvider, create_embedding_provider
from recall.exceptions import IndexNotInitialized, OperationCancelled
from recall.ingest.base import Tokenizer, create_tokenizer
from recall.search.hybrid import HybridSearch, SearchOptions, SearchResult
from recall.sessions import SessionStore, SessionSummary, SessionTranscript
from recall.sync.engine import ProgressCallback, SyncEngine, SyncOptions, SyncReport
from recall.sync.watcher import FileWatcher


@dataclass
class MemoryStatus:
    total_files: int
    total_chunks: int
    memory_files: int
    session_files: int
    pending_chunks: int
    cached_embeddings: int
    last_sync_at: str | None
    last_full_sync_at: str | None
    is_dirty: bool
    embedding_provider: str
    embedding_model: str
    database_path: Path
    database_size_bytes: int
    sync_in_progress: bool
    watching: bool


class MemoryManager:
    """Local persistent semantic memory index.

    Args:
        config: Loaded configuration; defaults are used when omitted.
        provider: Embedding provider override (otherwise built from ``config.embedding``).
        tokenizer: Tokenizer override (otherwise built from ``config.chunking``).

    Usage::

        async with MemoryManager(load_config()) as memory:
            await memory.sync()
            hits = await memory.search("deploy key rotation")
    """

    def __init__(
        self,
        config: RecallConfig | None = None,
        *,
        provider: EmbeddingProvider | None = None,
        tokenizer: Tokenizer | None = None,
    ) -> None:
        self.config = config or RecallConfig()
        self._provider = provider
        self._tokenizer = tokenizer
        self._db = Database(self.config.db_path)
        self._conn = None
        self._repo: Repository | None = None
        self._cache: EmbeddingCache | None = None
        self._engine: SyncEngine | None = None
        self._search: HybridSearch | None = None
        self._sessions = SessionStore(self.config.sessions_dir)

        self._sync_lock = asyncio.Lock()
        self._watch_sync_queued = False
        self._watcher: FileWatcher | None = None
        self._warm_sessions: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> None:
        """Open the database, apply migrations and build every component (idempotent)."""
        if self.initialized:
            return
        self.config.memory_dir.mkdir(parents=True, exist_ok=True)
        self.config.sessions_dir.mkdir(parents=True, exist_ok=True)

        provider = self._provider or create_embedding_provider(self.config.embedding)
        self._provider = provider
        tokenizer = self._tokenizer or create_tokenizer(
            self.config.chunking.tokenizer, self.config.chunking.encoding
        )
        self._tokenizer = tokenizer

        conn = self._db.connect()
        initialize(conn)
        self._conn = conn
        self._repo = Repository(conn)

        self._cache = EmbeddingCache(
            self._repo, provider, concurrency=self.config.embedding.concurrency
        )
        self._cache.evict(
            max_entries=self.config.cache.max_entries,
            max_age_days=self.config.cache.max_age_days,
        )
        self._engine = SyncEngine(
            self._repo,
            self._cache,
            self.config.chunking,
            tokenizer,
            {
                MemorySource.MEMORY: self.config.memory_dir,
                MemorySource.SESSIONS: self.config.sessions_dir,
            },
        )
        self._search = HybridSearch(
            self._repo, self._cache, snippet_chars=self.config.search.snippet_chars
        )
        logger.info(
            "Memory index ready at {} (embedding: {})", self.config.db_path, provider.identity
        )

    async def close(self) -> None:
        """Stop watching, let a running sync finish, and close the database."""
        await self.stop_watching()
        if self._conn is None:
            return
        async with self._sync_lock:
            self._conn.close()
            self._conn = None
            self._repo = None

    async def __aenter__(self) -> MemoryManager:
        await self.initialize()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def provider(self) -> EmbeddingProvider:
        self._require()
        return self._provider

    def _require(self) -> Repository:
        if self._repo is None:
            raise IndexNotInitialized(
                "MemoryManager is not initialized; call 'await manager.initialize()' first."
            )
        return self._repo

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(
        self,
        options: SyncOptions | None = None,
        progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncReport:
        """Reconcile the source folders with the index.

        Waits for any sync already running, then runs this one.
        """
        self._require()
        async with self._sync_lock:
            return await self._engine.run(options or SyncOptions(), progress, cancel)

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_lock.locked()

    async def _sync_from_watch(self) -> None:
        if self._watch_sync_queued or self._repo is None:
            return
        self._watch_sync_queued = True
        started = False
        try:
            async with self._sync_lock:
                # Changes observed from here on need another run.
                started = True
                self._watch_sync_queued = False
                if self._repo is None:
                    return
                await self._engine.run(SyncOptions(reason="watch"))
        finally:
            if not started:
                self._watch_sync_queued = False

    async def warm_session(self, session_key: str | None = None) -> None:
        """Bring the index up to date before a session starts (once per session key)."""
        repo = self._require()
        key = (session_key or "").strip()
        if key and key in self._warm_sessions:
            return
        if repo.get_meta("dirty", True) or self._engine.needs_full_sync():
            await self.sync(SyncOptions(reason="session-start"))
        if key:
            self._warm_sessions.add(key)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[SearchResult]:
        """Hybrid search over the index. Defaults come from ``config.search``.

        Raises:
            InvalidSearchOptions: For a blank query or malformed options.
        """
        self._require()
        options = options or SearchOptions.from_config(self.config.search)
        return await self._search.search(query, options, cancel)

    # ------------------------------------------------------------------
    # Sessions and notes
    # ------------------------------------------------------------------

    async def list_sessions(self, cancel: asyncio.Event | None = None) -> list[SessionSummary]:
        """Return saved sessions, newest first."""
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("list_sessions cancelled")
        return self._sessions.list()

    async def load_session(
        self, session_key: str, cancel: asyncio.Event | None = None
    ) -> SessionTranscript | None:
        """Return the saved transcript for *session_key*, or None if there is none."""
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("load_session cancelled")
        return self._sessions.load(session_key)

    async def save_session(self, transcript: SessionTranscript) -> Path:
        """Write *transcript* to the sessions folder and index it."""
        self._require()
        path = self._sessions.save(transcript)
        await self.sync(SyncOptions(reason="session-save", sources=(MemorySource.SESSIONS,)))
        return path

    async def add_memory(self, text: str, path: str | None = None) -> Path:
        """Write *text* as a note in the memory folder and index it.

        Args:
            text: Note content.
            path: Path relative to the memory folder; a timestamped name by default.

        Raises:
            ValueError: If *path* points outside the memory folder.
        """
        self._require()
        root = self.config.memory_dir.resolve()
        rel = path or f"memory_{datetime.now(timezone.utc):%Y%m%d_%H%M%S_%f}.md"
        target = (root / rel).resolve()
        if root not in target.parents:
            raise ValueError(f"memory path must stay inside {root}: {rel!r}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
        await self.sync(SyncOptions(reason="add-memory", sources=(MemorySource.MEMORY,)))
        logger.info("Added memory note {}", target.relative_to(root).as_posix())
        return target

    async def clear(self) -> None:
        """Drop every indexed file, chunk and cached embedding (source files are kept)."""
        repo = self._require()
        async with self._sync_lock:
            repo.clear_index()
            self._cache.clear()
            repo.set_meta(dirty=True, index_identity=None, last_sync_at=None)
        logger.info("Memory index cleared")

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def start_watching(self) -> bool:
        """Start the debounced folder watcher. Returns False when disabled in config."""
        self._require()
        if not self.config.watch.enabled:
            return False
        if self._watcher is None:
            self._watcher = FileWatcher(
                [self.config.memory_dir, self.config.sessions_dir],
                self._sync_from_watch,
                debounce_ms=self.config.watch.debounce_ms,
            )
        self._watcher.start()
        return True

    async def stop_watching(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> MemoryStatus:
        repo = self._require()
        return MemoryStatus(
            total_files=repo.count_files(),
            total_chunks=repo.count_chunks(),
            memory_files=repo.count_files(MemorySource.MEMORY),
            session_files=repo.count_files(MemorySource.SESSIONS),
            pending_chunks=repo.count_pending_chunks(),
            cached_embeddings=self._cache.count(),
            last_sync_at=repo.get_meta("last_sync_at"),
            last_full_sync_at=repo.get_meta("last_full_sync_at"),
            is_dirty=bool(repo.get_meta("dirty", True)),
            embedding_provider=self._provider.provider_id,
            embedding_model=self._provider.model,
            database_path=self.config.db_path,
            database_size_bytes=self._db.size_bytes(),
            sync_in_progress=self.sync_in_progress,
            watching=self._watcher is not None and self._watcher.running,
        )
