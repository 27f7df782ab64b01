"""Markdown chunker — heading sections packed from whole blocks."""

from __future__ import annotations

import re
from dataclasses import dataclass

from recall.ingest.base import BaseChunker, NumberedLine, TextChunk

MARKDOWN_EXTENSIONS: frozenset[str] = frozenset({".md", ".markdown", ".mdown", ".mkd"})

# ATX headings, H1-H6.
_HEADING_RE = re.compile(r"^ {0,3}#{1,6}(?:\s|$)")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")


@dataclass
class _Block:
    start: int  # 1-based, inclusive
    end: int
    heading: bool = False


def parse_blocks(lines: list[str]) -> list[_Block]:
    """Group *lines* into headings, fenced code blocks and blank-line-separated blocks.

    Paragraphs and lists are both "runs of non-blank lines". An unterminated
    fence extends to the end of the document.
    """
    blocks: list[_Block] = []
    i = 0
    n = len(lines)
    while i < n:
        line = lines[i]
        if not line.strip():
            i += 1
            continue

        if _HEADING_RE.match(line):
            blocks.append(_Block(i + 1, i + 1, heading=True))
            i += 1
            continue

        fence = _FENCE_RE.match(line)
        if fence:
            marker = fence.group(1)
            j = i + 1
            while j < n and not lines[j].lstrip().startswith(marker[0] * len(marker)):
                j += 1
            end = min(j, n - 1)
            blocks.append(_Block(i + 1, end + 1))
            i = end + 1
            continue

        j = i
        while (
            j + 1 < n
            and lines[j + 1].strip()
            and not _HEADING_RE.match(lines[j + 1])
            and not _FENCE_RE.match(lines[j + 1])
        ):
            j += 1
        blocks.append(_Block(i + 1, j + 1))
        i = j + 1
    return blocks


class MarkdownChunker(BaseChunker):
    """Split Markdown on heading boundaries, packing whole blocks per chunk.

    Strategy:
    - Parse the document into blocks (headings, fenced code, paragraphs/lists).
    - Every heading starts a new section; blocks of a section are packed
      greedily while they fit in ``max_tokens``.
    - A block larger than ``max_tokens`` is line-packed on its own, and a
      single line that is still too large is split by token windows.
    - Small sections (a lone heading, a one-line note) are merged with their
      neighbour by ``BaseChunker.chunk_text()``.
    """

    def _split(self, lines: list[str]) -> list[TextChunk]:
        chunks: list[TextChunk] = []
        group: list[_Block] = []
        group_tokens = 0

        def flush() -> None:
            nonlocal group, group_tokens
            if group:
                chunks.extend(self._emit(_numbered(lines, group[0].start, group[-1].end)))
            group, group_tokens = [], 0

        for block in parse_blocks(lines):
            if block.heading:
                flush()
            block_lines = _numbered(lines, block.start, block.end)
            tokens = self.tokenizer.count_tokens("\n".join(t for _, t in block_lines))
            if tokens > self.max_tokens:
                flush()
                chunks.extend(self._pack_lines(block_lines))
                continue
            if group and group_tokens + tokens + 1 > self.max_tokens:
                flush()
            group.append(block)
            group_tokens += tokens + 1

        flush()
        return chunks


def _numbered(lines: list[str], start: int, end: int) -> list[NumberedLine]:
    return [(no, lines[no - 1]) for no in range(start, end + 1)]
