from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import allure

from agent_relay.runtime.history import list_sessions, storage_dir_for

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Session History"),
]


def _index(sessions_dir: Path, workspace: Path, payload: object) -> None:
    storage = storage_dir_for(workspace, sessions_dir)
    storage.mkdir(parents=True)
    (storage / "sessions-index.json").write_text(json.dumps(payload))


def test_storage_dir_replaces_slashes(tmp_path: Path) -> None:
    assert storage_dir_for(Path("/home/me/app"), tmp_path) == tmp_path / "-home-me-app"


def test_sessions_are_sorted_limited_and_cleaned(tmp_path: Path) -> None:
    workspace = Path("/srv/app")
    entries = [
        {"sessionId": f"s{day}", "firstPrompt": f"<i>task</i> {day}", "modified": f"2026-05-{day:02d}T08:00:00"}
        for day in range(1, 13)
    ]
    entries.append({"sessionId": "blank", "firstPrompt": "", "modified": "2026-06-01T00:00:00"})
    _index(tmp_path, workspace, {"version": 1, "entries": entries})

    sessions = list_sessions(workspace, tmp_path)

    assert [session.session_id for session in sessions] == [f"s{day}" for day in range(12, 2, -1)]
    assert sessions[0].summary == "task 12"
    assert sessions[0].last_active_at == datetime(2026, 5, 12, 8, tzinfo=timezone.utc)


def test_missing_or_broken_index_gives_no_sessions(tmp_path: Path) -> None:
    assert list_sessions(Path("/nowhere"), tmp_path) == []

    storage = storage_dir_for(Path("/broken"), tmp_path)
    storage.mkdir(parents=True)
    (storage / "sessions-index.json").write_text("{not json")
    assert list_sessions(Path("/broken"), tmp_path) == []

    _index(tmp_path, Path("/odd"), {"entries": ["x", {"sessionId": "ok", "firstPrompt": "hi", "modified": 5}]})
    (session,) = list_sessions(Path("/odd"), tmp_path)
    assert session.session_id == "ok"
    assert session.last_active_at is None
