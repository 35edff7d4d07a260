"""Telegram front end: commands, workspace selection and prompt submission."""

from __future__ import annotations

import logging
from pathlib import Path

from telegram import BotCommand, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from agent_relay.chat.telegram_client import TelegramChatClient
from agent_relay.config import Settings
from agent_relay.runtime.history import list_sessions
from agent_relay.runtime.models import ConcurrencyKey, ReplyContext
from agent_relay.runtime.service import RelayService, SubmitStatus, build_relay_service

logger = logging.getLogger(__name__)

GENERAL_WORKSPACE = "__general__"

_COMMANDS = (
    ("projects", "Switch project"),
    ("stop", "Stop the current run, queued messages run next"),
    ("cancel", "Stop the current run and drop queued messages"),
    ("status", "Show the current state"),
    ("new", "Start a fresh conversation"),
    ("history", "Resume a past session"),
)


def list_workspaces(projects_dir: Path) -> list[str]:
    """Names of the project directories under ``projects_dir``."""

    try:
        return sorted(
            entry.name
            for entry in projects_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )
    except OSError as error:
        logger.warning("Cannot list projects in %s: %s", projects_dir, error)
        return []


class RelayBot:
    """Routes Telegram updates to the relay service."""

    def __init__(self, settings: Settings, service: RelayService | None = None) -> None:
        self.settings = settings
        self.service = service
        self._workspaces: dict[int, Path] = {}

    def build_application(self) -> Application:
        application = (
            ApplicationBuilder()
            .token(self.settings.telegram.bot_token)
            .post_init(self._post_init)
            .post_shutdown(self._post_shutdown)
            .build()
        )
        allowed = filters.User(user_id=list(self.settings.telegram.allowed_user_ids))

        application.add_handler(CommandHandler("start", self.on_start, filters=allowed))
        application.add_handler(CommandHandler("projects", self.on_projects, filters=allowed))
        application.add_handler(CommandHandler("stop", self.on_stop, filters=allowed))
        application.add_handler(CommandHandler("cancel", self.on_cancel, filters=allowed))
        application.add_handler(CommandHandler("status", self.on_status, filters=allowed))
        application.add_handler(CommandHandler("new", self.on_new, filters=allowed))
        application.add_handler(CommandHandler("history", self.on_history, filters=allowed))
        application.add_handler(
            CallbackQueryHandler(self.on_project_selected, pattern=r"^project:"),
        )
        application.add_handler(
            CallbackQueryHandler(self.on_session_selected, pattern=r"^session:"),
        )
        application.add_handler(
            MessageHandler(allowed & filters.TEXT & ~filters.COMMAND, self.on_text),
        )
        application.add_handler(MessageHandler(~allowed, self.on_unauthorized))
        return application

    def workspace_for(self, actor_id: int) -> Path:
        return self._workspaces.get(actor_id, self.settings.workspace.projects_dir)

    def workspace_label(self, workspace: Path) -> str:
        if workspace == self.settings.workspace.projects_dir:
            return "general"
        return workspace.name

    async def on_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        actor_id = update.effective_user.id
        label = self.workspace_label(self.workspace_for(actor_id))
        lines = ["Agent relay ready.", f"Active project: {label}", "", "Commands:"]
        lines.extend(f"/{name} - {description}" for name, description in _COMMANDS)
        await update.effective_message.reply_text("\n".join(lines))

    async def on_projects(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        projects_dir = self.settings.workspace.projects_dir
        names = list_workspaces(projects_dir)
        rows = [[InlineKeyboardButton("General (all projects)", callback_data=f"project:{GENERAL_WORKSPACE}")]]
        rows.extend([InlineKeyboardButton(name, callback_data=f"project:{name}")] for name in names)
        await update.effective_message.reply_text(
            "Select a project:",
            reply_markup=InlineKeyboardMarkup(rows),
        )

    async def on_project_selected(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        actor_id = query.from_user.id
        if actor_id not in self.settings.telegram.allowed_user_ids:
            await query.answer("Unauthorized.")
            return

        name = (query.data or "").removeprefix("project:")
        projects_dir = self.settings.workspace.projects_dir
        if name == GENERAL_WORKSPACE:
            workspace = projects_dir
        else:
            workspace = projects_dir / name
            if "/" in name or name.startswith(".") or not workspace.is_dir():
                await query.answer("Project not found")
                return

        self._workspaces[actor_id] = workspace
        label = self.workspace_label(workspace)
        await query.answer(f"Switched to {label}")
        await query.edit_message_text(f"Active project: {label}")

    async def on_stop(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        actor_id = update.effective_user.id
        stopped = await self._service().cancel(actor_id, self.workspace_for(actor_id))
        await update.effective_message.reply_text("Stopping." if stopped else "No active process.")

    async def on_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        actor_id = update.effective_user.id
        stopped = await self._service().cancel(
            actor_id,
            self.workspace_for(actor_id),
            discard_queue=True,
        )
        await update.effective_message.reply_text(
            "Stopped and cleared the queue." if stopped else "Nothing to cancel.",
        )

    async def on_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        actor_id = update.effective_user.id
        workspace = self.workspace_for(actor_id)
        status = self._service().status(ConcurrencyKey(actor_id, workspace))
        lines = [
            f"Project: {self.workspace_label(workspace)}",
            f"Running: {'Yes' if status.running else 'No'}",
            f"Queued: {status.queued}",
            f"Session: {status.session_token or '(new)'}",
        ]
        last = status.last_result
        if last is not None and last.cost_usd is not None:
            lines.append(f"Last run cost: ${last.cost_usd:.4f}")
        await update.effective_message.reply_text("\n".join(lines))

    async def on_new(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        actor_id = update.effective_user.id
        self._service().reset_session(ConcurrencyKey(actor_id, self.workspace_for(actor_id)))
        await update.effective_message.reply_text(
            "Session cleared. Next message starts a fresh conversation.",
        )

    async def on_history(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        workspace = self.workspace_for(update.effective_user.id)
        sessions = list_sessions(workspace, self.settings.agent.sessions_dir)
        if not sessions:
            await update.effective_message.reply_text("No session history found for this project.")
            return

        rows = []
        for session in sessions:
            when = session.last_active_at.strftime("%b %d %H:%M") if session.last_active_at else "?"
            rows.append(
                [
                    InlineKeyboardButton(
                        f"{when} - {session.summary[:40]}",
                        callback_data=f"session:{session.session_id}",
                    ),
                ],
            )
        await update.effective_message.reply_text(
            f"Sessions for {self.workspace_label(workspace)}:",
            reply_markup=InlineKeyboardMarkup(rows),
        )

    async def on_session_selected(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        actor_id = query.from_user.id
        if actor_id not in self.settings.telegram.allowed_user_ids:
            await query.answer("Unauthorized.")
            return

        session_id = (query.data or "").removeprefix("session:")
        workspace = self.workspace_for(actor_id)
        known = {session.session_id for session in list_sessions(workspace, self.settings.agent.sessions_dir)}
        if session_id not in known:
            await query.answer("Session not found")
            return

        self._service().set_session(ConcurrencyKey(actor_id, workspace), session_id)
        await query.answer("Session resumed")
        await query.edit_message_text("Resumed session. Next message continues this conversation.")

    async def on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        actor_id = update.effective_user.id
        text = (message.text or "").strip()
        if not text:
            return
        result = await self._service().submit(
            actor_id,
            self.workspace_for(actor_id),
            text,
            ReplyContext(chat_id=message.chat_id, message_id=message.message_id),
        )
        if result.status is SubmitStatus.REJECTED:
            await message.reply_text("Shutting down, try again in a moment.")

    async def on_unauthorized(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.effective_message is not None:
            await update.effective_message.reply_text("Unauthorized.")

    def _service(self) -> RelayService:
        if self.service is None:
            raise RuntimeError("Relay service is not initialised.")
        return self.service

    async def _post_init(self, application: Application) -> None:
        if self.service is None:
            self.service = build_relay_service(self.settings, TelegramChatClient(application.bot))
        await application.bot.set_my_commands(
            [BotCommand(name, description) for name, description in _COMMANDS],
        )
        logger.info("Bot started: projects_dir=%s", self.settings.workspace.projects_dir)

    async def _post_shutdown(self, application: Application) -> None:
        if self.service is not None:
            logger.info("Shutting down, stopping active agent runs")
            await self.service.shutdown()
