from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import allure

from agent_relay.chat.bot import GENERAL_WORKSPACE, RelayBot, list_workspaces
from agent_relay.config import AgentSettings, Settings, TelegramSettings, WorkspaceSettings
from agent_relay.runtime.models import ConcurrencyKey, ReplyContext
from agent_relay.runtime.service import RelayStatus, SubmitResult, SubmitStatus

pytestmark = [
    allure.epic("Chat Front End"),
    allure.feature("Telegram Commands"),
]

USER_ID = 11


def _settings(projects_dir: Path) -> Settings:
    return Settings(
        telegram=TelegramSettings(bot_token="123456:TEST", allowed_user_ids=(USER_ID,)),
        agent=AgentSettings(sessions_dir=projects_dir / ".sessions"),
        workspace=WorkspaceSettings(projects_dir=projects_dir),
    )


def _update(text: str = "", user_id: int = USER_ID) -> MagicMock:
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_message.text = text
    update.effective_message.chat_id = 500
    update.effective_message.message_id = 9
    update.effective_message.reply_text = AsyncMock()
    return update


def _callback(data: str, user_id: int = USER_ID) -> MagicMock:
    update = MagicMock()
    update.callback_query.from_user.id = user_id
    update.callback_query.data = data
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_text = AsyncMock()
    return update


def _service() -> MagicMock:
    service = MagicMock()
    service.submit = AsyncMock(return_value=SubmitResult(SubmitStatus.STARTED))
    service.cancel = AsyncMock(return_value=True)
    return service


def test_list_workspaces_skips_files_and_hidden_dirs(tmp_path: Path) -> None:
    (tmp_path / "beta").mkdir()
    (tmp_path / "alpha").mkdir()
    (tmp_path / ".cache").mkdir()
    (tmp_path / "notes.txt").write_text("x")

    assert list_workspaces(tmp_path) == ["alpha", "beta"]
    assert list_workspaces(tmp_path / "missing") == []


def test_text_is_submitted_for_selected_workspace(tmp_path: Path) -> None:
    (tmp_path / "alpha").mkdir()
    service = _service()
    bot = RelayBot(_settings(tmp_path), service=service)

    asyncio.run(bot.on_project_selected(_callback("project:alpha"), MagicMock()))
    asyncio.run(bot.on_text(_update("  fix the tests "), MagicMock()))

    service.submit.assert_awaited_once_with(
        USER_ID,
        tmp_path / "alpha",
        "fix the tests",
        ReplyContext(chat_id=500, message_id=9),
    )


def test_default_workspace_is_projects_root(tmp_path: Path) -> None:
    bot = RelayBot(_settings(tmp_path), service=_service())

    assert bot.workspace_for(USER_ID) == tmp_path
    assert bot.workspace_label(tmp_path) == "general"


def test_project_selection_rejects_unknown_and_traversal(tmp_path: Path) -> None:
    bot = RelayBot(_settings(tmp_path), service=_service())

    for data in ("project:missing", "project:../etc", "project:.hidden"):
        update = _callback(data)
        asyncio.run(bot.on_project_selected(update, MagicMock()))
        update.callback_query.answer.assert_awaited_once_with("Project not found")

    assert bot.workspace_for(USER_ID) == tmp_path


def test_general_selection_returns_to_root(tmp_path: Path) -> None:
    (tmp_path / "alpha").mkdir()
    bot = RelayBot(_settings(tmp_path), service=_service())
    asyncio.run(bot.on_project_selected(_callback("project:alpha"), MagicMock()))

    update = _callback(f"project:{GENERAL_WORKSPACE}")
    asyncio.run(bot.on_project_selected(update, MagicMock()))

    assert bot.workspace_for(USER_ID) == tmp_path
    update.callback_query.edit_message_text.assert_awaited_once_with("Active project: general")


def test_callback_from_stranger_is_refused(tmp_path: Path) -> None:
    (tmp_path / "alpha").mkdir()
    bot = RelayBot(_settings(tmp_path), service=_service())
    update = _callback("project:alpha", user_id=999)

    asyncio.run(bot.on_project_selected(update, MagicMock()))

    update.callback_query.answer.assert_awaited_once_with("Unauthorized.")
    assert bot.workspace_for(999) == tmp_path


def test_stop_and_cancel_map_to_service(tmp_path: Path) -> None:
    service = _service()
    bot = RelayBot(_settings(tmp_path), service=service)

    stop = _update()
    asyncio.run(bot.on_stop(stop, MagicMock()))
    cancel = _update()
    asyncio.run(bot.on_cancel(cancel, MagicMock()))

    assert service.cancel.await_args_list[0].args == (USER_ID, tmp_path)
    assert service.cancel.await_args_list[0].kwargs == {}
    assert service.cancel.await_args_list[1].kwargs == {"discard_queue": True}
    stop.effective_message.reply_text.assert_awaited_once_with("Stopping.")
    cancel.effective_message.reply_text.assert_awaited_once_with("Stopped and cleared the queue.")


def test_status_and_new(tmp_path: Path) -> None:
    service = _service()
    service.status.return_value = RelayStatus(running=True, queued=2, session_token="abc", last_result=None)
    bot = RelayBot(_settings(tmp_path), service=service)

    status = _update()
    asyncio.run(bot.on_status(status, MagicMock()))
    asyncio.run(bot.on_new(_update(), MagicMock()))

    text = status.effective_message.reply_text.await_args.args[0]
    assert "Running: Yes" in text
    assert "Queued: 2" in text
    assert "Session: abc" in text
    service.reset_session.assert_called_once_with(ConcurrencyKey(USER_ID, tmp_path))


def test_rejected_submission_is_reported(tmp_path: Path) -> None:
    service = _service()
    service.submit.return_value = SubmitResult(SubmitStatus.REJECTED)
    bot = RelayBot(_settings(tmp_path), service=service)
    update = _update("hello")

    asyncio.run(bot.on_text(update, MagicMock()))

    update.effective_message.reply_text.assert_awaited_once_with("Shutting down, try again in a moment.")


def test_build_application_registers_handlers(tmp_path: Path) -> None:
    application = RelayBot(_settings(tmp_path)).build_application()

    assert len(application.handlers[0]) == 11


def _write_index(settings: Settings, workspace: Path, entries: list[dict]) -> None:
    storage = settings.agent.sessions_dir / str(workspace).replace("/", "-")
    storage.mkdir(parents=True)
    (storage / "sessions-index.json").write_text(json.dumps({"version": 1, "entries": entries}))


def test_history_lists_sessions_newest_first(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_index(
        settings,
        tmp_path,
        [
            {"sessionId": "old", "firstPrompt": "first task", "modified": "2026-03-01T10:05:00Z"},
            {"sessionId": "new", "firstPrompt": "<b>second</b> task", "modified": "2026-03-02T09:30:00Z"},
            {"sessionId": "side", "firstPrompt": "helper", "modified": "2026-03-03T09:00:00Z", "isSidechain": True},
        ],
    )
    bot = RelayBot(settings, service=_service())
    update = _update()

    asyncio.run(bot.on_history(update, MagicMock()))

    args, kwargs = update.effective_message.reply_text.await_args
    assert args == ("Sessions for general:",)
    buttons = [row[0] for row in kwargs["reply_markup"].inline_keyboard]
    assert [button.callback_data for button in buttons] == ["session:new", "session:old"]
    assert buttons[0].text == "Mar 02 09:30 - second task"


def test_history_without_sessions_says_so(tmp_path: Path) -> None:
    bot = RelayBot(_settings(tmp_path), service=_service())
    update = _update()

    asyncio.run(bot.on_history(update, MagicMock()))

    update.effective_message.reply_text.assert_awaited_once_with("No session history found for this project.")


def test_session_selection_pins_resume_token(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_index(settings, tmp_path, [{"sessionId": "abc", "firstPrompt": "task", "modified": "2026-03-02T09:30:00Z"}])
    service = _service()
    bot = RelayBot(settings, service=service)
    update = _callback("session:abc")

    asyncio.run(bot.on_session_selected(update, MagicMock()))

    service.set_session.assert_called_once_with(ConcurrencyKey(USER_ID, tmp_path), "abc")
    update.callback_query.answer.assert_awaited_once_with("Session resumed")


def test_unknown_session_is_not_pinned(tmp_path: Path) -> None:
    service = _service()
    bot = RelayBot(_settings(tmp_path), service=service)
    update = _callback("session:--help")

    asyncio.run(bot.on_session_selected(update, MagicMock()))

    update.callback_query.answer.assert_awaited_once_with("Session not found")
    service.set_session.assert_not_called()
