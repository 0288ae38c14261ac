"""Error taxonomy for the rebalance engine.

Planning-phase errors (``ChainReadError``, ``InsufficientGasError``,
``PriceUnavailableError``) abort a tick before any operation exists.
Execution-phase errors (everything raised by the bridge orchestrator and the
transaction monitor) mark the in-flight operation FAILED.
"""

from __future__ import annotations


class BalbotError(Exception):
    """Base class for all balbot errors. The message is operator-facing."""


class ConfigError(BalbotError):
    """Raised when configuration is missing or invalid."""


class ChainReadError(BalbotError):
    """Raised when an RPC call or contract read fails or returns garbage."""


class InsufficientGasError(BalbotError):
    """Raised when a wallet lacks the native balance needed to pay for gas."""


class PriceUnavailableError(BalbotError):
    """Raised when a token has no usable USD price."""


class QuoteUnavailableError(BalbotError):
    """Raised when the aggregator returns no usable route or transaction data."""


class ApprovalError(BalbotError):
    """Raised when reading allowance, approving, or confirming approval fails."""


class SubmissionError(BalbotError):
    """Raised when gas estimation, sending, or a required confirmation fails."""


class MonitorTimeoutError(BalbotError):
    """Raised when bridge status polling runs out of attempts."""


class BridgeFailedError(BalbotError):
    """Raised when the aggregator reports a failed source or destination leg."""


class PersistenceError(BalbotError):
    """Raised when the operation store rejects or fails a read or write."""
