"""Trade notifications published to Telegram.

The pipeline publishes ``{"trade_id": ..., "type": <source>}`` for every
opened or closed lane. Delivery is best effort: callers swallow failures.
"""

import json
import logging
from typing import Any, Optional, Protocol

from telegram import Bot

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def publish(self, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class NullNotifier:
    """Used when no notification sink is configured."""

    async def publish(self, payload: dict[str, Any]) -> None:
        logger.debug(f"Notification (no sink configured): {payload}")

    async def close(self) -> None:
        return None


class TelegramNotifier:
    """Sends each payload as a JSON message to every configured chat."""

    def __init__(self, token: str, chat_ids: list[int], bot: Optional[Bot] = None):
        self.chat_ids = list(chat_ids)
        self._bot = bot or Bot(token)
        self._initialized = False

    async def _ensure_bot(self) -> Bot:
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True
        return self._bot

    async def publish(self, payload: dict[str, Any]) -> None:
        bot = await self._ensure_bot()
        text = json.dumps(payload)
        for chat_id in self.chat_ids:
            await bot.send_message(chat_id=chat_id, text=text)
        logger.debug(f"Notification sent to {len(self.chat_ids)} chats: {text}")

    async def close(self) -> None:
        if self._initialized:
            await self._bot.shutdown()
            self._initialized = False


def build_notifier(token: str, chat_ids: list[int]) -> Notifier:
    if token and chat_ids:
        logger.info(f"Telegram notifications enabled for {len(chat_ids)} chats")
        return TelegramNotifier(token, chat_ids)
    logger.info("Telegram notifications disabled (no token or chat ids)")
    return NullNotifier()
