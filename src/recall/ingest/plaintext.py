"""Plain-text chunker — greedy line packing with overlap."""

from __future__ import annotations

from recall.ingest.base import BaseChunker, TextChunk


class PlainTextChunker(BaseChunker):
    """Pack whole lines into chunks; hard-split lines longer than ``max_tokens``.

    Used for transcripts, notes without Markdown structure, and every
    non-Markdown indexable file (code, config, data).
    """

    def _split(self, lines: list[str]) -> list[TextChunk]:
        return self._pack_lines(list(enumerate(lines, start=1)))
