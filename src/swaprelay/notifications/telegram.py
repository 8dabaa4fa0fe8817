"""Telegram notification service.

Sends operator alerts for swaps the relayer cannot resolve on its own.
Uses a singleton pattern to share the bot instance.
"""

import asyncio
import html
import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from swaprelay.config import get_settings

logger = logging.getLogger(__name__)

# Human-readable titles for alert kinds
ALERT_TITLES = {
    "counter_leg_failed": "Counter escrow failed",
    "withdraw_failed": "Withdrawal failed",
    "refund_exhausted": "Refund retries exhausted",
    "consistency_violation": "Consistency violation",
}

# Singleton bot instance
_bot_instance: Optional[Bot] = None
_bot_lock = asyncio.Lock()


async def get_bot() -> Optional[Bot]:
    """Get or create the bot instance for notifications."""
    global _bot_instance

    if _bot_instance is not None:
        return _bot_instance

    async with _bot_lock:
        # Double-check after acquiring lock
        if _bot_instance is not None:
            return _bot_instance

        settings = get_settings()
        if not settings.telegram_bot_token:
            logger.warning("Telegram bot token not configured - notifications disabled")
            return None

        _bot_instance = Bot(token=settings.telegram_bot_token)
        return _bot_instance


async def close_bot() -> None:
    """Close the bot session (call on shutdown)."""
    global _bot_instance
    if _bot_instance is not None:
        await _bot_instance.session.close()
        _bot_instance = None


class TelegramNotifier:
    """Service for sending Telegram messages to operator chats."""

    def __init__(self, bot: Optional[Bot] = None, chat_ids: Optional[list[int]] = None):
        """Initialize with optional bot instance and chat list.

        If no bot provided, will use the singleton instance. If no chats are
        provided, the configured alert chats are used.
        """
        self._bot = bot
        self.chat_ids = chat_ids if chat_ids is not None else get_settings().alert_chats

    async def _get_bot(self) -> Optional[Bot]:
        """Get the bot instance."""
        if self._bot:
            return self._bot
        return await get_bot()

    async def send_message(
        self,
        chat_id: int,
        message: str,
        parse_mode: Optional[str] = "HTML",
    ) -> bool:
        """Send a message to one chat.

        Args:
            chat_id: Telegram chat ID
            message: Message text
            parse_mode: Optional parse mode (HTML, Markdown, etc.)

        Returns:
            True if message was sent successfully
        """
        bot = await self._get_bot()
        if not bot:
            logger.warning("Cannot send notification - bot not initialized")
            return False

        try:
            await bot.send_message(
                chat_id=chat_id,
                text=message,
                parse_mode=parse_mode,
            )
            return True
        except TelegramForbiddenError:
            logger.warning(f"Chat {chat_id} has blocked the bot")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending to {chat_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send notification to {chat_id}: {e}")
            return False

    async def broadcast(self, message: str) -> int:
        """Send a message to every operator chat.

        Returns:
            Number of chats the message reached
        """
        sent = 0
        for chat_id in self.chat_ids:
            if await self.send_message(chat_id, message):
                sent += 1
        return sent

    async def notify_alert(
        self,
        kind: str,
        message: str,
        swap_id: Optional[str] = None,
        chain: Optional[str] = None,
    ) -> int:
        """Broadcast an operator alert about a swap.

        Args:
            kind: Alert kind (counter_leg_failed, refund_exhausted, ...)
            message: Details, escaped before sending
            swap_id: Affected swap, if any
            chain: Chain the failing escrow lives on, if known

        Returns:
            Number of chats the alert reached
        """
        title = ALERT_TITLES.get(kind, kind.replace("_", " ").capitalize())
        lines = [f"<b>{html.escape(title)}</b>", ""]
        lines.append(f"Swap: <code>{html.escape(swap_id or '-')}</code>")
        if chain:
            lines.append(f"Chain: {html.escape(chain)}")
        lines.append(html.escape(message))

        sent = await self.broadcast("\n".join(lines))
        if self.chat_ids and not sent:
            logger.error(f"Alert {kind} for swap {swap_id} reached no operator chat")
        return sent
