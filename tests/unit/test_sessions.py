"""Tests for session transcripts and the SessionStore."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import yaml

from recall.sessions import SessionStore, SessionTranscript, safe_session_key


def _transcript(key="chat-1", start_hour=9, **kwargs) -> SessionTranscript:
    t = SessionTranscript(session_key=key, **kwargs)
    t.add("user", "How do I rotate the deploy key?", datetime(2024, 5, 1, start_hour, 0, 0, tzinfo=timezone.utc))
    t.add("assistant", "Use the vault CLI.", datetime(2024, 5, 1, start_hour, 0, 7, tzinfo=timezone.utc))
    return t


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def test_to_markdown_has_front_matter_and_messages():
    md = _transcript(title="Deploy questions").to_markdown()
    header = yaml.safe_load(md.split("---\n")[1])
    assert header["session_key"] == "chat-1"
    assert header["title"] == "Deploy questions"
    assert header["message_count"] == 2
    assert "# Deploy questions" in md
    assert "**User** (09:00:00): How do I rotate the deploy key?" in md
    assert "**Assistant** (09:00:07): Use the vault CLI." in md


def test_to_markdown_title_defaults_to_key():
    md = _transcript(key="abc").to_markdown()
    assert "# abc" in md


def test_to_markdown_includes_summary():
    md = _transcript(summary="Covered key rotation.").to_markdown()
    assert "Covered key rotation." in md
    assert yaml.safe_load(md.split("---\n")[1])["summary"] == "Covered key rotation."


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("key,expected", [
    ("chat-1", "chat-1"),
    ("team/chat 42", "team-chat-42"),
    ("../../etc/passwd", "etc-passwd"),
])
def test_safe_session_key(key, expected):
    assert safe_session_key(key) == expected


def test_safe_session_key_rejects_empty():
    with pytest.raises(ValueError):
        safe_session_key("///")


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------


def test_save_and_list(tmp_path):
    store = SessionStore(tmp_path / "sessions")
    path = store.save(_transcript(title="Deploy"))
    assert path.name == "chat-1.md"
    [summary] = store.list()
    assert summary.session_key == "chat-1"
    assert summary.title == "Deploy"
    assert summary.message_count == 2
    assert summary.started_at == datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)
    assert summary.ended_at == datetime(2024, 5, 1, 9, 0, 7, tzinfo=timezone.utc)


def test_save_replaces_previous_version(tmp_path):
    store = SessionStore(tmp_path)
    t = _transcript()
    store.save(t)
    t.add("user", "thanks", datetime(2024, 5, 1, 9, 1, 0, tzinfo=timezone.utc))
    store.save(t)
    [summary] = store.list()
    assert summary.message_count == 3
    assert not list(tmp_path.glob(".*.tmp"))


def test_list_newest_first(tmp_path):
    store = SessionStore(tmp_path)
    store.save(_transcript(key="early", start_hour=8))
    store.save(_transcript(key="late", start_hour=17))
    store.save(_transcript(key="mid", start_hour=12))
    assert [s.session_key for s in store.list()] == ["late", "mid", "early"]


def test_list_missing_folder(tmp_path):
    assert SessionStore(tmp_path / "nope").list() == []


def test_list_skips_unreadable_files(tmp_path):
    store = SessionStore(tmp_path)
    store.save(_transcript())
    (tmp_path / "broken.md").write_text("---\nkey: [unclosed\n---\nbody\n", encoding="utf-8")
    assert [s.session_key for s in store.list()] == ["chat-1"]


def test_list_reads_transcripts_without_front_matter(tmp_path):
    (tmp_path / "manual.md").write_text(
        "# Hand written\n\n**User** (10:00:00): hi\n\n**Assistant** (10:00:01): hello\n",
        encoding="utf-8",
    )
    [summary] = SessionStore(tmp_path).list()
    assert summary.session_key == "manual"
    assert summary.title == "Hand written"
    assert summary.message_count == 2


def test_load_round_trips_saved_transcript(tmp_path):
    store = SessionStore(tmp_path)
    original = _transcript(title="Deploy questions", summary="Covered key rotation.")
    original.entries[1].content = "Use the vault CLI.\n\nThen restart the agent."
    store.save(original)

    loaded = store.load("chat-1")

    assert loaded.session_key == "chat-1"
    assert loaded.title == "Deploy questions"
    assert loaded.summary == "Covered key rotation."
    assert [(e.role, e.content, e.timestamp) for e in loaded.entries] == [
        (e.role, e.content, e.timestamp) for e in original.entries
    ]
    assert loaded.to_markdown() == original.to_markdown()


def test_load_missing_session(tmp_path):
    assert SessionStore(tmp_path).load("nope") is None


def test_load_rolls_message_times_past_midnight(tmp_path):
    t = SessionTranscript(session_key="late")
    t.add("user", "still up?", datetime(2024, 5, 1, 23, 59, 50, tzinfo=timezone.utc))
    t.add("assistant", "yes", datetime(2024, 5, 2, 0, 0, 5, tzinfo=timezone.utc))
    store = SessionStore(tmp_path)
    store.save(t)
    loaded = store.load("late")
    assert loaded.entries[1].timestamp == datetime(2024, 5, 2, 0, 0, 5, tzinfo=timezone.utc)


def test_load_hand_written_transcript(tmp_path):
    (tmp_path / "manual.md").write_text(
        "# Hand written\n\n**User** (10:00:00): hi\n\n**Assistant** (10:00:01): hello\n",
        encoding="utf-8",
    )
    loaded = SessionStore(tmp_path).load("manual")
    assert loaded.title == "Hand written"
    assert [e.role for e in loaded.entries] == ["user", "assistant"]
    assert loaded.entries[1].content == "hello"


def test_delete(tmp_path):
    store = SessionStore(tmp_path)
    store.save(_transcript())
    assert store.delete("chat-1") is True
    assert store.delete("chat-1") is False
    assert store.list() == []
