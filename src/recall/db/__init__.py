"""Recall database layer."""

from recall.db.connection import Database
from recall.db.migrations import MIGRATIONS, run_migrations
from recall.db.models import Chunk, IndexedFile, MemorySource
from recall.db.repository import Repository
from recall.db.schema import CURRENT_VERSION, initialize
from recall.db.vectors import deserialize_vector, serialize_vector

__all__ = [
    "CURRENT_VERSION",
    "Chunk",
    "Database",
    "IndexedFile",
    "MIGRATIONS",
    "MemorySource",
    "Repository",
    "deserialize_vector",
    "initialize",
    "run_migrations",
    "serialize_vector",
]
