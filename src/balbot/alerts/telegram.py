"""Telegram notifier for rebalance status and errors.

Uses python-telegram-bot for async message delivery with retry logic.
Messages are sent with HTML parse mode; all dynamic text is escaped.
"""

from __future__ import annotations

import asyncio
import html
import logging

import telegram

from balbot.alerts.notifier_protocol import error_text

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0

INFO_PREFIX = "\U0001f514"  # bell
ERROR_PREFIX = "❌ Error:"


class TelegramNotifier:
    """Sends info and error messages to a single Telegram chat.

    Delivery is best-effort: after MAX_RETRIES failed attempts the message
    is dropped and False is returned. Nothing here raises.

    Args:
        bot_token: Telegram Bot API token.
        chat_id: Target chat/channel ID for messages.
    """

    def __init__(self, bot_token: str, chat_id: str) -> None:
        self._bot = telegram.Bot(token=bot_token)
        self._chat_id = chat_id

    async def send_info(self, text: str) -> bool:
        return await self.send_message(f"{INFO_PREFIX} {html.escape(text)}")

    async def send_error(self, error: str | BaseException) -> bool:
        return await self.send_message(
            f"{ERROR_PREFIX}\n{html.escape(error_text(error))}"
        )

    async def send_message(self, text: str, parse_mode: str = "HTML") -> bool:
        """Send a pre-formatted message to the configured chat.

        Retries up to MAX_RETRIES times, honouring Telegram's RetryAfter.

        Args:
            text: Message text, already escaped for ``parse_mode``.
            parse_mode: Telegram parse mode.

        Returns:
            True if the message was sent, False otherwise.
        """
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                await self._bot.send_message(
                    chat_id=self._chat_id,
                    text=text,
                    parse_mode=parse_mode,
                )
                return True
            except telegram.error.RetryAfter as e:
                retry_after = e.retry_after
                if not isinstance(retry_after, (int, float)):
                    retry_after = retry_after.total_seconds()
                logger.warning(
                    "Telegram rate limited, retry after %s seconds (attempt %d/%d)",
                    retry_after,
                    attempt,
                    MAX_RETRIES,
                )
                if attempt < MAX_RETRIES:
                    await asyncio.sleep(retry_after)
            except telegram.error.TelegramError as e:
                logger.error(
                    "Telegram send failed (attempt %d/%d): %s",
                    attempt,
                    MAX_RETRIES,
                    e,
                )
                if attempt < MAX_RETRIES:
                    await asyncio.sleep(RETRY_DELAY_SECONDS * attempt)
        return False
