"""Saved conversation transcripts in the sessions folder.

Each session is one Markdown file with a YAML front-matter header followed
by one ``**Role** (HH:MM:SS): text`` paragraph per message. The files are
ordinary indexable documents; the sync engine picks them up like notes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

_FRONT_MATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---\r?\n?", re.DOTALL)
_MESSAGE_RE = re.compile(
    r"^\*\*([^*\n]+)\*\* \((\d{2}):(\d{2}):(\d{2})\): ?", re.MULTILINE
)
_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class TranscriptEntry:
    role: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SessionTranscript:
    """A conversation to persist. ``started_at``/``ended_at`` default to the entry range."""

    session_key: str
    entries: list[TranscriptEntry] = field(default_factory=list)
    title: str | None = None
    summary: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def add(self, role: str, content: str, timestamp: datetime | None = None) -> None:
        self.entries.append(
            TranscriptEntry(role, content, timestamp or datetime.now(timezone.utc))
        )

    def to_markdown(self) -> str:
        """Render the transcript with its front-matter header."""
        started = self.started_at or (self.entries[0].timestamp if self.entries else None)
        ended = self.ended_at or (self.entries[-1].timestamp if self.entries else None)
        header: dict[str, Any] = {
            "session_key": self.session_key,
            "title": self.title or self.session_key,
            "started_at": started.isoformat() if started else None,
            "ended_at": ended.isoformat() if ended else None,
            "message_count": len(self.entries),
        }
        if self.summary:
            header["summary"] = self.summary

        parts = [
            "---\n" + yaml.safe_dump(header, sort_keys=False, allow_unicode=True) + "---",
            f"# {header['title']}",
        ]
        if self.summary:
            parts.append(self.summary.strip())
        for entry in self.entries:
            role = entry.role.strip().capitalize() or "Unknown"
            parts.append(
                f"**{role}** ({entry.timestamp.strftime('%H:%M:%S')}): {entry.content.strip()}"
            )
        return "\n\n".join(parts) + "\n"


@dataclass
class SessionSummary:
    session_key: str
    title: str
    started_at: datetime | None
    ended_at: datetime | None
    message_count: int
    summary: str | None
    path: Path


def safe_session_key(key: str) -> str:
    """Map a session key onto a safe file stem."""
    cleaned = _UNSAFE_KEY_RE.sub("-", key.strip()).strip(".-")
    if not cleaned:
        raise ValueError(f"session key {key!r} has no usable characters")
    return cleaned


class SessionStore:
    """Read and write session transcripts under *folder*."""

    def __init__(self, folder: Path) -> None:
        self.folder = Path(folder)

    def path_for(self, session_key: str) -> Path:
        return self.folder / f"{safe_session_key(session_key)}.md"

    def save(self, transcript: SessionTranscript) -> Path:
        """Write *transcript*, replacing any earlier save of the same session."""
        self.folder.mkdir(parents=True, exist_ok=True)
        path = self.path_for(transcript.session_key)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(transcript.to_markdown(), encoding="utf-8")
        tmp.replace(path)
        logger.debug("Saved session {} to {}", transcript.session_key, path)
        return path

    def load(self, session_key: str) -> SessionTranscript | None:
        """Read a saved transcript back, or None if *session_key* was never saved.

        Message times are stored as ``HH:MM:SS`` only; dates are rebuilt from
        the session start, moving to the next day whenever the clock wraps.

        Raises:
            ValueError: If the front matter cannot be parsed.
        """
        path = self.path_for(session_key)
        if not path.is_file():
            return None
        try:
            return _read_transcript(path)
        except yaml.YAMLError as exc:
            raise ValueError(f"cannot parse session file {path.name}: {exc}") from exc

    def delete(self, session_key: str) -> bool:
        path = self.path_for(session_key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list(self) -> list[SessionSummary]:
        """Return every readable session, newest first. Unreadable files are skipped."""
        if not self.folder.is_dir():
            return []
        summaries: list[SessionSummary] = []
        for path in sorted(self.folder.glob("*.md")):
            try:
                summaries.append(_read_summary(path))
            except (OSError, UnicodeDecodeError, yaml.YAMLError, ValueError) as exc:
                logger.warning("Skipping unreadable session file {}: {}", path.name, exc)
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        summaries.sort(key=lambda s: (s.started_at or epoch, s.session_key), reverse=True)
        return summaries


def _read_summary(path: Path) -> SessionSummary:
    text = path.read_text(encoding="utf-8")
    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        # Transcript written by hand or by another tool: derive what we can.
        heading = re.search(r"^# (.+)$", text, re.MULTILINE)
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return SessionSummary(
            session_key=path.stem,
            title=heading.group(1).strip() if heading else path.stem,
            started_at=mtime,
            ended_at=mtime,
            message_count=len(_MESSAGE_RE.findall(text)),
            summary=None,
            path=path,
        )

    header = yaml.safe_load(match.group(1)) or {}
    if not isinstance(header, dict):
        raise ValueError("front matter is not a mapping")
    body = text[match.end() :]
    return SessionSummary(
        session_key=str(header.get("session_key") or path.stem),
        title=str(header.get("title") or path.stem),
        started_at=_parse_datetime(header.get("started_at")),
        ended_at=_parse_datetime(header.get("ended_at")),
        message_count=int(header.get("message_count", len(_MESSAGE_RE.findall(body)))),
        summary=header.get("summary"),
        path=path,
    )


def _read_transcript(path: Path) -> SessionTranscript:
    summary = _read_summary(path)
    text = path.read_text(encoding="utf-8")
    match = _FRONT_MATTER_RE.match(text)
    body = text[match.end() :] if match else text

    start = summary.started_at or datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    day = start.replace(hour=0, minute=0, second=0, microsecond=0)
    previous: datetime | None = None
    messages = list(_MESSAGE_RE.finditer(body))
    entries: list[TranscriptEntry] = []
    for i, m in enumerate(messages):
        end = messages[i + 1].start() if i + 1 < len(messages) else len(body)
        stamp = day.replace(hour=int(m.group(2)), minute=int(m.group(3)), second=int(m.group(4)))
        if previous is not None and stamp < previous:
            day += timedelta(days=1)
            stamp += timedelta(days=1)
        previous = stamp
        entries.append(
            TranscriptEntry(m.group(1).strip().lower(), body[m.end() : end].strip(), stamp)
        )

    title = summary.title if summary.title != summary.session_key else None
    return SessionTranscript(
        session_key=summary.session_key,
        entries=entries,
        title=title,
        summary=summary.summary,
        started_at=summary.started_at if match else None,
        ended_at=summary.ended_at if match else None,
    )


def _parse_datetime(value: Any) -> datetime | None:
    """Accept datetimes (YAML may already parse ISO timestamps) or ISO strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
