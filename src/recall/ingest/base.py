"""Tokenizers and the base chunker shared by every document type.

Chunk boundaries are computed in tokens. A chunk is emitted only after its
final text has been re-counted, so ``token_count <= max_tokens`` holds for
every tokenizer, including BPE ones where counts are not additive.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import tiktoken


def content_hash(text: str) -> str:
    """SHA-256 hex digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Tokenizers
# ---------------------------------------------------------------------------


class Tokenizer(ABC):
    """Counts tokens and splits text into token-sized pieces."""

    name: str = ""

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        """Return the number of tokens in *text* (0 for an empty string)."""

    @abstractmethod
    def split_tokens(self, text: str) -> list[str]:
        """Split *text* into one string per token.

        ``"".join(split_tokens(text)) == text`` always holds. Pieces may be
        empty where a multi-byte character spans several tokens.
        """


class TiktokenTokenizer(Tokenizer):
    """BPE tokenizer backed by tiktoken (``cl100k_base`` matches OpenAI embedding models)."""

    def __init__(self, encoding: str = "cl100k_base") -> None:
        self.name = f"tiktoken:{encoding}"
        self._enc = tiktoken.get_encoding(encoding)

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return len(self._enc.encode(text, disallowed_special=()))

    def split_tokens(self, text: str) -> list[str]:
        if not text:
            return []
        tokens = self._enc.encode(text, disallowed_special=())
        decoded, offsets = self._enc.decode_with_offsets(tokens)
        bounds = offsets + [len(decoded)]
        return [decoded[bounds[i] : bounds[i + 1]] for i in range(len(offsets))]


class ApproxTokenizer(Tokenizer):
    """Approximate tokenizer: 4 characters ≈ 1 token.

    Fast, deterministic and dependency-free; consistent with GPT tokeniser
    averages for English prose and technical documentation.
    """

    name = "approx:4"
    _CHARS_PER_TOKEN = 4

    def count_tokens(self, text: str) -> int:
        return (len(text) + self._CHARS_PER_TOKEN - 1) // self._CHARS_PER_TOKEN

    def split_tokens(self, text: str) -> list[str]:
        step = self._CHARS_PER_TOKEN
        return [text[i : i + step] for i in range(0, len(text), step)]


def create_tokenizer(name: str = "tiktoken", encoding: str = "cl100k_base") -> Tokenizer:
    """Build the tokenizer named by ``chunking.tokenizer``.

    Raises:
        ValueError: If *name* is not ``tiktoken`` or ``approx``.
    """
    if name == "tiktoken":
        return TiktokenTokenizer(encoding)
    if name == "approx":
        return ApproxTokenizer()
    raise ValueError(f"Unknown tokenizer '{name}' (expected 'tiktoken' or 'approx')")


# ---------------------------------------------------------------------------
# Chunk model
# ---------------------------------------------------------------------------


@dataclass
class TextChunk:
    """A retrievable span of a source document. Line numbers are 1-based, inclusive."""

    text: str
    start_line: int
    end_line: int
    token_count: int
    hash: str = field(default="")

    def __post_init__(self) -> None:
        if not self.hash:
            self.hash = content_hash(self.text)


NumberedLine = tuple[int, str]


# ---------------------------------------------------------------------------
# Base chunker
# ---------------------------------------------------------------------------


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Subclasses implement ``_split()`` and build on ``_pack_lines()`` (greedy
    line packing with overlap) and ``_emit()`` (verified chunk construction).
    ``chunk_text()`` then merges undersized neighbours and closes line gaps
    left by stripped blank lines.
    """

    def __init__(
        self,
        tokenizer: Tokenizer | None = None,
        max_tokens: int = 512,
        overlap_tokens: int = 50,
        min_tokens: int = 50,
    ) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if not 0 <= overlap_tokens < max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens)")
        if not 0 <= min_tokens <= max_tokens:
            raise ValueError("min_tokens must be in [0, max_tokens]")
        self.tokenizer = tokenizer or ApproxTokenizer()
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.min_tokens = min_tokens

    def chunk_text(self, text: str, source_path: str = "") -> list[TextChunk]:
        """Split *text* into ordered chunks covering every line of the document.

        Args:
            text: Full decoded text of the source document.
            source_path: Original file path (used by subclasses for dispatch only).

        Returns:
            Chunks in document order; empty for blank input.
        """
        if not text.strip():
            return []
        lines = text.splitlines()
        chunks = self._split(lines)
        chunks = self._merge_small(chunks, lines)
        _close_gaps(chunks, len(lines))
        return chunks

    @abstractmethod
    def _split(self, lines: list[str]) -> list[TextChunk]:
        """Produce document-ordered chunks for *lines* (1-based numbering)."""

    # ------------------------------------------------------------------
    # Packing helpers
    # ------------------------------------------------------------------

    def _pack_lines(self, numbered: list[NumberedLine]) -> list[TextChunk]:
        """Greedily pack whole lines into chunks, carrying an overlap tail.

        A single line longer than ``max_tokens`` is hard-split by tokens.
        """
        chunks: list[TextChunk] = []
        current: list[NumberedLine] = []
        current_tokens = 0

        for line_no, line in numbered:
            n = self.tokenizer.count_tokens(line) + 1  # +1 for the joining newline
            if n - 1 > self.max_tokens:
                chunks.extend(self._emit(current))
                chunks.extend(self._split_long_line(line_no, line))
                current, current_tokens = [], 0
                continue
            if current and current_tokens + n > self.max_tokens:
                chunks.extend(self._emit(current))
                current = self._overlap_tail(current)
                current_tokens = sum(self.tokenizer.count_tokens(t) + 1 for _, t in current)
                if current_tokens + n > self.max_tokens:
                    current, current_tokens = [], 0
            current.append((line_no, line))
            current_tokens += n

        chunks.extend(self._emit(current))
        return chunks

    def _overlap_tail(self, lines: list[NumberedLine]) -> list[NumberedLine]:
        """Trailing lines of *lines* worth at most ``overlap_tokens`` (never all of them)."""
        if self.overlap_tokens == 0:
            return []
        tail: list[NumberedLine] = []
        budget = self.overlap_tokens
        for line_no, line in reversed(lines[1:]):
            n = self.tokenizer.count_tokens(line) + 1
            if n > budget:
                break
            tail.insert(0, (line_no, line))
            budget -= n
        return tail

    def _emit(self, lines: list[NumberedLine]) -> list[TextChunk]:
        """Build chunk(s) from consecutive *lines*, re-splitting if the joined text is too large."""
        while lines and not lines[0][1].strip():
            lines = lines[1:]
        while lines and not lines[-1][1].strip():
            lines = lines[:-1]
        if not lines:
            return []

        text = "\n".join(line for _, line in lines)
        tokens = self.tokenizer.count_tokens(text)
        if tokens <= self.max_tokens:
            return [TextChunk(text, lines[0][0], lines[-1][0], tokens)]
        if len(lines) == 1:
            return self._split_long_line(lines[0][0], lines[0][1])
        mid = len(lines) // 2
        return self._emit(lines[:mid]) + self._emit(lines[mid:])

    def _split_long_line(self, line_no: int, line: str) -> list[TextChunk]:
        """Hard-split one oversized line into overlapping token windows.

        Window size is ``max_tokens``; the step is ``max_tokens - overlap_tokens``.
        """
        pieces = self.tokenizer.split_tokens(line)
        step = self.max_tokens - self.overlap_tokens
        chunks: list[TextChunk] = []
        start = 0
        while start < len(pieces):
            end = min(start + self.max_tokens, len(pieces))
            text = "".join(pieces[start:end])
            tokens = self.tokenizer.count_tokens(text)
            # BPE re-encoding of a window can differ from the piece count.
            while tokens > self.max_tokens and end - start > 1:
                end -= 1
                text = "".join(pieces[start:end])
                tokens = self.tokenizer.count_tokens(text)
            if text.strip():
                chunks.append(TextChunk(text, line_no, line_no, tokens))
            if end >= len(pieces):
                break
            start = max(start + 1, min(start + step, end))
        return chunks

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    def _merge_small(self, chunks: list[TextChunk], lines: list[str]) -> list[TextChunk]:
        """Merge adjacent, non-overlapping chunks when one is below ``min_tokens``."""
        if self.min_tokens == 0 or len(chunks) < 2:
            return chunks
        merged: list[TextChunk] = [chunks[0]]
        for chunk in chunks[1:]:
            prev = merged[-1]
            small = prev.token_count < self.min_tokens or chunk.token_count < self.min_tokens
            if small and chunk.start_line > prev.end_line:
                text = "\n".join(lines[prev.start_line - 1 : chunk.end_line])
                tokens = self.tokenizer.count_tokens(text)
                if tokens <= self.max_tokens:
                    merged[-1] = TextChunk(text, prev.start_line, chunk.end_line, tokens)
                    continue
            merged.append(chunk)
        return merged


def _close_gaps(chunks: list[TextChunk], total_lines: int) -> None:
    """Extend line ranges over stripped blank lines so the union covers the document."""
    if not chunks:
        return
    chunks[0].start_line = 1
    for prev, nxt in zip(chunks, chunks[1:]):
        if nxt.start_line > prev.end_line + 1:
            prev.end_line = nxt.start_line - 1
    chunks[-1].end_line = max(chunks[-1].end_line, total_lines)
