"""Tests for tokenizers and the shared BaseChunker behaviour."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from recall.config import ChunkingCfg
from recall.ingest import chunker_for
from recall.ingest.base import (
    ApproxTokenizer,
    TextChunk,
    TiktokenTokenizer,
    content_hash,
    create_tokenizer,
)
from recall.ingest.markdown import MarkdownChunker
from recall.ingest.plaintext import PlainTextChunker


def _chunker(max_tokens=100, overlap=10, min_tokens=0):
    return PlainTextChunker(
        tokenizer=ApproxTokenizer(),
        max_tokens=max_tokens,
        overlap_tokens=overlap,
        min_tokens=min_tokens,
    )


def _covered_lines(chunks: list[TextChunk]) -> set[int]:
    lines: set[int] = set()
    for c in chunks:
        lines.update(range(c.start_line, c.end_line + 1))
    return lines


# ------------------------------------------------------------------
# Tokenizers
# ------------------------------------------------------------------

def test_approx_tokenizer_counts_quarter_chars():
    tok = ApproxTokenizer()
    assert tok.count_tokens("") == 0
    assert tok.count_tokens("abcd") == 1
    assert tok.count_tokens("abcde") == 2


def test_approx_split_tokens_rejoins_to_original():
    tok = ApproxTokenizer()
    text = "the quick brown fox"
    pieces = tok.split_tokens(text)
    assert "".join(pieces) == text
    assert len(pieces) == tok.count_tokens(text)


def test_create_tokenizer_approx():
    assert isinstance(create_tokenizer("approx"), ApproxTokenizer)


def test_create_tokenizer_tiktoken_uses_encoding():
    with patch("recall.ingest.base.tiktoken.get_encoding", return_value=MagicMock()) as get:
        tok = create_tokenizer("tiktoken", "cl100k_base")
    get.assert_called_once_with("cl100k_base")
    assert isinstance(tok, TiktokenTokenizer)
    assert tok.name == "tiktoken:cl100k_base"


def test_tiktoken_split_tokens_uses_decode_offsets():
    enc = MagicMock()
    enc.encode.return_value = [1, 2, 3]
    enc.decode_with_offsets.return_value = ("hello world", [0, 5, 6])
    with patch("recall.ingest.base.tiktoken.get_encoding", return_value=enc):
        tok = TiktokenTokenizer()
    assert tok.split_tokens("hello world") == ["hello", " ", "world"]
    assert tok.count_tokens("hello world") == 3


def test_create_tokenizer_unknown_raises():
    with pytest.raises(ValueError, match="Unknown tokenizer"):
        create_tokenizer("wordpiece")


# ------------------------------------------------------------------
# Construction
# ------------------------------------------------------------------

@pytest.mark.parametrize("kwargs", [
    {"max_tokens": 0},
    {"max_tokens": 10, "overlap_tokens": 10},
    {"max_tokens": 10, "overlap_tokens": -1},
    {"max_tokens": 10, "overlap_tokens": 0, "min_tokens": 11},
])
def test_invalid_limits_raise(kwargs):
    with pytest.raises(ValueError):
        PlainTextChunker(**kwargs)


def test_text_chunk_hash_defaults_to_content_hash():
    chunk = TextChunk("abc", 1, 1, 1)
    assert chunk.hash == content_hash("abc")


# ------------------------------------------------------------------
# chunk_text
# ------------------------------------------------------------------

def test_blank_text_gives_no_chunks():
    assert _chunker().chunk_text("") == []
    assert _chunker().chunk_text("   \n\n  \n") == []


def test_short_text_is_one_chunk():
    chunks = _chunker().chunk_text("one line\nsecond line")
    assert len(chunks) == 1
    assert (chunks[0].start_line, chunks[0].end_line) == (1, 2)


def test_chunks_never_exceed_max_tokens():
    text = "\n".join(f"line {i} " + "word " * (i % 17) for i in range(300))
    chunker = _chunker(max_tokens=60, overlap=8)
    for c in chunker.chunk_text(text):
        assert c.token_count <= 60
        assert ApproxTokenizer().count_tokens(c.text) == c.token_count


def test_every_line_is_covered():
    text = "\n".join(["alpha " * 5, "", "beta " * 5, "", "", "gamma " * 30, "delta"])
    chunks = _chunker(max_tokens=20, overlap=4).chunk_text(text)
    assert _covered_lines(chunks) == set(range(1, 8))


def test_chunks_are_in_document_order():
    text = "\n".join(f"row {i} with some filler text" for i in range(200))
    chunks = _chunker(max_tokens=50, overlap=10).chunk_text(text)
    starts = [c.start_line for c in chunks]
    assert starts == sorted(starts)
    assert chunks[-1].end_line == 200


def test_consecutive_chunks_overlap():
    text = "\n".join(f"entry {i:03d}" for i in range(100))  # 9 chars -> 3 tokens + newline
    chunks = _chunker(max_tokens=40, overlap=8).chunk_text(text)
    assert len(chunks) > 1
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_line <= prev.end_line


def test_zero_overlap_gives_disjoint_chunks():
    text = "\n".join(f"entry {i:03d}" for i in range(100))
    chunks = _chunker(max_tokens=40, overlap=0).chunk_text(text)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_line == prev.end_line + 1


def test_single_5000_token_line_splits_into_11_windows():
    line = "abcd" * 5000  # 5000 approx tokens
    chunks = _chunker(max_tokens=500, overlap=50, min_tokens=50).chunk_text(line)
    assert len(chunks) == 11
    assert all(c.token_count <= 500 for c in chunks)
    assert all((c.start_line, c.end_line) == (1, 1) for c in chunks)


def test_long_line_windows_rejoin_to_line():
    line = "".join(f"{i:04d}" for i in range(1000))
    chunks = _chunker(max_tokens=100, overlap=0).chunk_text(line)
    assert "".join(c.text for c in chunks) == line


def test_small_neighbours_are_merged():
    text = "# Intro\ntiny note\n\n# Details\n" + "a much longer line of text " * 10
    chunker = MarkdownChunker(tokenizer=ApproxTokenizer(), max_tokens=100, overlap_tokens=0, min_tokens=30)
    chunks = chunker.chunk_text(text)
    assert len(chunks) == 1
    assert (chunks[0].start_line, chunks[0].end_line) == (1, 5)


# ------------------------------------------------------------------
# chunker_for
# ------------------------------------------------------------------

def test_chunker_for_markdown_file():
    chunker = chunker_for("notes/todo.md", ChunkingCfg(max_tokens=64), ApproxTokenizer())
    assert isinstance(chunker, MarkdownChunker)
    assert chunker.max_tokens == 64


def test_chunker_for_other_files_is_plain():
    assert isinstance(chunker_for("script.py", ChunkingCfg(), ApproxTokenizer()), PlainTextChunker)


def test_chunker_for_markdown_disabled():
    cfg = ChunkingCfg(markdown_aware=False)
    assert isinstance(chunker_for("README.MD", cfg, ApproxTokenizer()), PlainTextChunker)
