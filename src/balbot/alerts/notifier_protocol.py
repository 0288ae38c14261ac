"""Notifier protocol for operator-facing status and error messages."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Notifier(Protocol):
    """Best-effort delivery of human-readable text.

    Implementations must never raise: a failed delivery is logged and
    swallowed so it cannot abort a rebalance.
    """

    async def send_info(self, text: str) -> bool:
        """Send an informational message. Returns True if delivered."""
        ...

    async def send_error(self, error: str | BaseException) -> bool:
        """Send an error message.

        Exceptions are rendered by their message text only, never with a
        traceback.
        """
        ...


def error_text(error: str | BaseException) -> str:
    """Render ``error`` as plain message text."""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return error
