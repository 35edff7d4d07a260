"""Chat client backed by python-telegram-bot."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

from telegram import Bot, LinkPreviewOptions
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest, RetryAfter, TelegramError

from agent_relay.chat.base import (
    ChatError,
    MarkupRejectedError,
    MessageNotModifiedError,
    MessageRef,
    MessageTooLongError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_RETRY_AFTER_SECONDS = 30.0
_NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


class TelegramChatClient:
    """Map Bot API calls and errors onto the chat contract."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send_message(self, chat_id: int, text: str, *, html: bool = False) -> MessageRef:
        sent = await self._call(
            lambda: self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML if html else None,
                link_preview_options=_NO_PREVIEW,
            ),
        )
        return MessageRef(chat_id=chat_id, message_id=sent.message_id)

    async def edit_message(self, ref: MessageRef, text: str, *, html: bool = False) -> None:
        await self._call(
            lambda: self.bot.edit_message_text(
                text=text,
                chat_id=ref.chat_id,
                message_id=ref.message_id,
                parse_mode=ParseMode.HTML if html else None,
                link_preview_options=_NO_PREVIEW,
            ),
        )

    async def delete_message(self, ref: MessageRef) -> None:
        await self._call(
            lambda: self.bot.delete_message(chat_id=ref.chat_id, message_id=ref.message_id),
        )

    async def send_typing(self, chat_id: int) -> None:
        await self._call(lambda: self.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING))

    async def _call(self, request: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request()
        except RetryAfter as error:
            delay = _retry_after_seconds(error)
            if delay > _MAX_RETRY_AFTER_SECONDS:
                raise ChatError(f"Flood control: retry in {delay:.0f}s") from error
            logger.info("Telegram flood control, retrying in %.1fs", delay)
            await asyncio.sleep(delay)
            try:
                return await request()
            except TelegramError as retry_error:
                raise _translate(retry_error) from retry_error
        except TelegramError as error:
            raise _translate(error) from error


def _translate(error: TelegramError) -> ChatError:
    description = error.message.lower()
    if isinstance(error, BadRequest):
        if "message is not modified" in description:
            return MessageNotModifiedError(error.message)
        if "can't parse entities" in description or "unsupported start tag" in description:
            return MarkupRejectedError(error.message)
        if "message is too long" in description or "message_too_long" in description:
            return MessageTooLongError(error.message)
    return ChatError(error.message)


def _retry_after_seconds(error: RetryAfter) -> float:
    retry_after = error.retry_after
    if isinstance(retry_after, timedelta):
        return retry_after.total_seconds()
    return float(retry_after)
