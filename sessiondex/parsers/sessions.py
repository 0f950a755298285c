"""Parse JSONL session transcripts into SessionRecord metadata."""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sessiondex.models import SessionRecord
from sessiondex.paths import decode_project_dir, session_id_from_filename

logger = logging.getLogger("sessiondex.parsers")

_MESSAGE_TYPES = {"user", "assistant"}


@dataclass
class ParsedSession:
    record: SessionRecord
    events: list[dict[str, Any]] = field(default_factory=list)
    skipped_lines: int = 0


def content_fingerprint(content: bytes) -> str:
    """SHA-256 of the raw transcript bytes."""
    return hashlib.sha256(content).hexdigest()


def _parse_timestamp(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


def parse_events(text: str) -> tuple[list[dict[str, Any]], int]:
    """Decode JSONL text; malformed lines are counted and skipped."""
    events: list[dict[str, Any]] = []
    skipped = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            continue
        if isinstance(payload, dict):
            events.append(payload)
        else:
            skipped += 1
    return events, skipped


def _project_path(events: list[dict[str, Any]], project_dir: Path) -> str:
    for event in events:
        cwd = event.get("cwd")
        if isinstance(cwd, str) and cwd.strip():
            return cwd.strip()
    return decode_project_dir(project_dir.name)


def parse_session_file(path: Path, content: bytes | None = None) -> ParsedSession | None:
    """Extract session metadata without any analysis.

    Returns None when the filename is not a session identifier.
    ``content`` may be passed in when the caller already read the file.
    """
    session_id = session_id_from_filename(path)
    if not session_id:
        return None

    stat = path.stat()
    if content is None:
        content = path.read_bytes()

    text = content.decode("utf-8", errors="replace")
    events, skipped = parse_events(text)
    if skipped:
        logger.debug(f"Skipped {skipped} malformed line(s) in {path}")

    user_count = 0
    assistant_count = 0
    first_ts: str | None = None
    last_ts: str | None = None
    for event in events:
        kind = event.get("type")
        if kind not in _MESSAGE_TYPES:
            continue
        if kind == "user":
            user_count += 1
        else:
            assistant_count += 1
        ts = event.get("timestamp")
        if isinstance(ts, str) and ts:
            if first_ts is None or ts < first_ts:
                first_ts = ts
            if last_ts is None or ts > last_ts:
                last_ts = ts

    duration = 0
    if first_ts and last_ts:
        start = _parse_timestamp(first_ts)
        end = _parse_timestamp(last_ts)
        if start and end:
            duration = max(0, int((end - start).total_seconds()))

    message_count = user_count + assistant_count
    project_path = _project_path(events, path.parent)
    record = SessionRecord(
        sessionId=session_id,
        projectName=Path(project_path).name or path.parent.name,
        projectPath=project_path,
        filePath=str(path),
        fileName=path.name,
        fileSize=stat.st_size,
        fileModifiedTime=int(stat.st_mtime * 1000),
        contentHash=content_fingerprint(content),
        messageCount=message_count,
        userMessageCount=user_count,
        assistantMessageCount=assistant_count,
        firstMessageTime=first_ts,
        lastMessageTime=last_ts,
        sessionDurationSeconds=duration,
        isValid=bool(text.strip()),
        isEmpty=message_count == 0,
    )
    return ParsedSession(record=record, events=events, skipped_lines=skipped)
