"""Domain models for the memory index database layer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class MemorySource(str, Enum):
    """Which source folder a file was indexed from."""

    MEMORY = "memory"
    SESSIONS = "sessions"


@dataclass
class IndexedFile:
    path: str
    source: MemorySource
    hash: str
    mtime: float
    size: int
    indexed_at: str | None = None
    id: int | None = None  # set after insert; None for unsaved files


@dataclass
class Chunk:
    path: str
    source: MemorySource
    chunk_index: int
    start_line: int
    end_line: int
    hash: str
    text: str
    model: str = ""
    embedding: list[float] | None = None  # None while the embedding is pending
    token_count: int = 0
    updated_at: str | None = None
    file_id: int | None = None
    id: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.embedding is None
