"""Data models (Pydantic).

    from balbot.models import RebalanceOperation, Direction, ChainSide
"""

from balbot.models.chain import (
    NATIVE_DECIMALS,
    ChainBalance,
    ChainSide,
    Direction,
    TrackedAsset,
    format_units,
    is_native_token,
)
from balbot.models.operation import (
    UNFINISHED_STATUSES,
    OperationStatus,
    RebalanceOperation,
)

__all__ = [
    "NATIVE_DECIMALS",
    "UNFINISHED_STATUSES",
    "ChainBalance",
    "ChainSide",
    "Direction",
    "OperationStatus",
    "RebalanceOperation",
    "TrackedAsset",
    "format_units",
    "is_native_token",
]
