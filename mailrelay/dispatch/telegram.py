"""
Telegram dispatch sink.

Sends a short new-mail notice to the user's private chat. The chat id of a
private chat equals the Telegram user id.
"""

import logging
from typing import Optional

from telegram import Bot
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TelegramError

from .base import DeliveryResult, DispatchSink, Notification
from ..core.exceptions import DispatchError


logger = logging.getLogger(__name__)


def format_notification(notification: Notification) -> str:
    """Plain-text notice for a new message."""
    message = notification.message
    lines = [
        "🔔 New Email Received!",
        "",
        f"📇 From: {message.from_address or 'Unknown'}",
        f"🗒️ Subject: {message.subject or 'No Subject'}",
    ]
    if message.created_at:
        lines.append(f"📅 Time: {message.created_at}")
    lines += ["", f"📧 Email: {notification.mailbox_address}"]
    return "\n".join(lines)


class TelegramSink(DispatchSink):
    """Delivers notifications as Telegram chat messages."""

    name = "telegram"

    def __init__(self, bot: Optional[Bot] = None, token: Optional[str] = None):
        """
        Args:
            bot: Ready telegram.Bot (takes precedence)
            token: Bot token used to build a Bot when none is given
        """
        if bot is None and not token:
            raise ValueError("TelegramSink needs a bot or a bot token")
        self._owns_bot = bot is None
        self._initialized = not self._owns_bot
        self.bot = bot or Bot(token=token)

    async def _ensure_initialized(self):
        if self._initialized:
            return
        try:
            await self.bot.initialize()
        except TelegramError as e:
            raise DispatchError(f"Telegram bot could not be initialized: {e}") from e
        self._initialized = True

    async def deliver(self, user_id: str, notification: Notification) -> DeliveryResult:
        try:
            chat_id = int(user_id)
        except ValueError:
            logger.warning(f"User id {user_id!r} is not a Telegram chat id")
            return DeliveryResult.UNDELIVERABLE

        await self._ensure_initialized()

        try:
            await self.bot.send_message(chat_id=chat_id, text=format_notification(notification))
        except (Forbidden, BadRequest) as e:
            # Bot blocked, chat gone or never started
            logger.info(f"Telegram chat {user_id} unreachable: {e}")
            return DeliveryResult.UNDELIVERABLE
        except RetryAfter as e:
            raise DispatchError(f"Telegram flood control for chat {user_id}: retry after {e.retry_after}s") from e
        except NetworkError as e:
            raise DispatchError(f"Telegram send to chat {user_id} failed: {e}") from e

        logger.debug(f"Sent Telegram notice for {notification.message.id} to chat {user_id}")
        return DeliveryResult.DELIVERED

    async def close(self):
        """Shut down the HTTP client of a bot this sink built itself."""
        if self._owns_bot and self._initialized:
            await self.bot.shutdown()
            self._initialized = False
