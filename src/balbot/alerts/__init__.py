"""Operator notifications (Telegram, log)."""

from balbot.alerts.log_notifier import LogNotifier
from balbot.alerts.notifier_protocol import Notifier, error_text
from balbot.alerts.telegram import TelegramNotifier
from balbot.alerts.telegram_bot import TelegramBotService

__all__ = [
    "LogNotifier",
    "Notifier",
    "TelegramBotService",
    "TelegramNotifier",
    "error_text",
]
