"""Bridge aggregator integration: quoting, orchestration, status monitoring."""

from balbot.bridge.aggregator import AggregatorClient
from balbot.bridge.models import (
    ApprovalData,
    BridgeStatus,
    BuildTxResult,
    LegStatus,
    QuoteRequest,
    Route,
    TransferStatus,
)
from balbot.bridge.monitor import MonitorResult, TransactionMonitor
from balbot.bridge.orchestrator import BridgeOrchestrator

__all__ = [
    "AggregatorClient",
    "ApprovalData",
    "BridgeOrchestrator",
    "BridgeStatus",
    "BuildTxResult",
    "LegStatus",
    "MonitorResult",
    "QuoteRequest",
    "Route",
    "TransactionMonitor",
    "TransferStatus",
]
