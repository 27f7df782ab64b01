"""Recall ingest pipeline — tokenizers and chunkers."""

from __future__ import annotations

from pathlib import PurePath

from recall.config import ChunkingCfg
from recall.ingest.base import (
    ApproxTokenizer,
    BaseChunker,
    TextChunk,
    TiktokenTokenizer,
    Tokenizer,
    content_hash,
    create_tokenizer,
)
from recall.ingest.markdown import MARKDOWN_EXTENSIONS, MarkdownChunker
from recall.ingest.plaintext import PlainTextChunker

__all__ = [
    "ApproxTokenizer",
    "BaseChunker",
    "MARKDOWN_EXTENSIONS",
    "MarkdownChunker",
    "PlainTextChunker",
    "TextChunk",
    "TiktokenTokenizer",
    "Tokenizer",
    "chunker_for",
    "content_hash",
    "create_tokenizer",
]


def chunker_for(path: str | PurePath, cfg: ChunkingCfg, tokenizer: Tokenizer) -> BaseChunker:
    """Return the chunker for *path*: Markdown-aware for Markdown files, plain otherwise."""
    cls: type[BaseChunker] = PlainTextChunker
    if cfg.markdown_aware and PurePath(path).suffix.lower() in MARKDOWN_EXTENSIONS:
        cls = MarkdownChunker
    return cls(
        tokenizer=tokenizer,
        max_tokens=cfg.max_tokens,
        overlap_tokens=cfg.overlap_tokens,
        min_tokens=cfg.min_tokens,
    )
