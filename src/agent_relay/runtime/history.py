"""Past agent sessions recorded by the agent CLI for a workspace."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_SESSIONS = 10
MAX_SUMMARY_CHARS = 100

_INDEX_FILE = "sessions-index.json"
_TAG_RE = re.compile(r"<[^>]+>")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class SessionInfo:
    session_id: str
    summary: str
    started_at: datetime | None
    last_active_at: datetime | None


def storage_dir_for(workspace: Path, sessions_dir: Path) -> Path:
    """The agent keeps a workspace's sessions under its path with ``/`` turned into ``-``."""

    return sessions_dir / str(workspace).replace("/", "-")


def list_sessions(
    workspace: Path,
    sessions_dir: Path,
    *,
    limit: int = MAX_SESSIONS,
) -> list[SessionInfo]:
    """Most recently active sessions for ``workspace``, newest first."""

    sessions = [
        _session_from_entry(entry)
        for entry in _read_index(storage_dir_for(workspace, sessions_dir))
        if not entry.get("isSidechain") and entry.get("firstPrompt") and entry.get("sessionId")
    ]
    sessions.sort(key=lambda session: session.last_active_at or _EPOCH, reverse=True)
    return sessions[:limit]


def _read_index(storage_dir: Path) -> list[dict[str, Any]]:
    index_path = storage_dir / _INDEX_FILE
    try:
        payload = json.loads(index_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as error:
        logger.warning("Cannot read session index %s: %s", index_path, error)
        return []
    entries = payload.get("entries") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        return []
    return [entry for entry in entries if isinstance(entry, dict)]


def _session_from_entry(entry: dict[str, Any]) -> SessionInfo:
    summary = _TAG_RE.sub("", str(entry.get("firstPrompt"))).strip()
    return SessionInfo(
        session_id=str(entry["sessionId"]),
        summary=summary[:MAX_SUMMARY_CHARS],
        started_at=_parse_timestamp(entry.get("created")),
        last_active_at=_parse_timestamp(entry.get("modified")),
    )


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
