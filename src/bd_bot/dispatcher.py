from __future__ import annotations

from typing import Protocol

from telegram import Bot
from telegram.error import TelegramError


class DispatchError(RuntimeError):
    pass


class Dispatcher(Protocol):
    async def send(self, chat_id: int, text: str) -> None: ...


class TelegramDispatcher:
    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send(self, chat_id: int, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=chat_id, text=text)
        except TelegramError as exc:
            raise DispatchError(f"Telegram refused message to chat {chat_id}: {exc}") from exc
