"""Notifier that only writes to the structured log.

Used when no chat channel is configured.
"""

from __future__ import annotations

from balbot.alerts.notifier_protocol import error_text
from balbot.logging import get_logger

logger = get_logger("alerts.log")


class LogNotifier:
    """Logs info and error messages instead of delivering them."""

    async def send_info(self, text: str) -> bool:
        logger.info("notify_info", text=text)
        return True

    async def send_error(self, error: str | BaseException) -> bool:
        logger.error("notify_error", text=error_text(error))
        return True
