"""Interactive Telegram bot for balbot status queries.

Provides /status, /last and /help so the operator can check the
rebalancer from Telegram. Only the configured chat is answered.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes

from balbot.logging import get_logger
from balbot.models.chain import format_units
from balbot.models.operation import RebalanceOperation

if TYPE_CHECKING:
    from balbot.rebalancer.engine import RebalanceEngine

logger = get_logger("telegram_bot")

MAX_MESSAGE_LENGTH = 4096


def format_operation(operation: RebalanceOperation | None) -> str:
    """Plain-text summary of one operation."""
    if operation is None:
        return "No rebalance operations yet."
    lines = [
        f"Operation: {operation.id}",
        f"Status: {operation.status.value}",
        f"Direction: {operation.direction.value}",
        f"Amount: {format_units(operation.amount_units)}",
        f"Created: {operation.created_at:%Y-%m-%d %H:%M:%S} UTC",
    ]
    if operation.bridge_txhash:
        lines.append(f"Tx: {operation.bridge_txhash}")
    if len(operation.submitted_steps) > 1:
        lines.append(f"Steps: {', '.join(operation.submitted_steps)}")
    if operation.completed_at is not None:
        lines.append(f"Finished: {operation.completed_at:%Y-%m-%d %H:%M:%S} UTC")
    if operation.error_message:
        lines.append(f"Error: {operation.error_message}")
    return "\n".join(lines)


def _truncate(text: str) -> str:
    if len(text) > MAX_MESSAGE_LENGTH:
        return text[: MAX_MESSAGE_LENGTH - 3] + "..."
    return text


class TelegramBotService:
    """Polling-based Telegram bot for interactive status queries.

    Args:
        bot_token: Telegram Bot API token.
        chat_id: Authorized chat ID (only this chat can issue commands).
        engine: Rebalance engine whose state is reported.
    """

    def __init__(self, bot_token: str, chat_id: str, engine: RebalanceEngine) -> None:
        self._chat_id = str(chat_id)
        self._engine = engine
        self._started_at = datetime.now(UTC)

        self._app = Application.builder().token(bot_token).build()
        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("last", self._cmd_last))
        self._app.add_handler(CommandHandler("help", self._cmd_help))
        self._app.add_handler(CommandHandler("start", self._cmd_help))

    def _is_authorized(self, update: Update) -> bool:
        return (
            update.effective_chat is not None
            and str(update.effective_chat.id) == self._chat_id
        )

    async def start(self) -> None:
        """Start the bot polling loop."""
        await self._app.initialize()
        await self._app.start()
        if self._app.updater is not None:
            await self._app.updater.start_polling(drop_pending_updates=True)
        logger.info("telegram_bot_started")

    async def stop(self) -> None:
        """Stop the bot polling loop."""
        try:
            if self._app.updater is not None and self._app.updater.running:
                await self._app.updater.stop()
            if self._app.running:
                await self._app.stop()
            await self._app.shutdown()
        except TelegramError as e:
            logger.warning("telegram_bot_stop_failed", error=str(e))
        logger.info("telegram_bot_stopped")

    def format_status(self, latest: RebalanceOperation | None) -> str:
        uptime = datetime.now(UTC) - self._started_at
        hours = uptime.total_seconds() / 3600
        last_tick = self._engine.last_tick_at
        state = "Rebalancing" if self._engine.is_busy else "Idle"

        lines = [
            "[balbot Status]",
            f"State: {state}",
            f"Uptime: {hours:.1f}h",
            "Last tick: "
            + (
                f"{last_tick:%Y-%m-%d %H:%M:%S} UTC ({self._engine.last_outcome})"
                if last_tick is not None
                else "never"
            ),
            "",
            "[Latest Operation]",
            format_operation(latest),
        ]
        return "\n".join(lines)

    async def _cmd_status(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not self._is_authorized(update):
            return
        latest = await self._engine.store.latest()
        assert update.message is not None
        await update.message.reply_text(_truncate(self.format_status(latest)))

    async def _cmd_last(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not self._is_authorized(update):
            return
        latest = await self._engine.store.latest()
        assert update.message is not None
        await update.message.reply_text(_truncate(format_operation(latest)))

    async def _cmd_help(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not self._is_authorized(update):
            return

        msg = (
            "[balbot Commands]\n"
            "/status - Engine state & latest operation\n"
            "/last   - Latest rebalance operation\n"
            "/help   - This message"
        )
        assert update.message is not None
        await update.message.reply_text(msg)
