"""Chain-side identifiers, transfer direction, and balance snapshots."""

from __future__ import annotations

import enum
from decimal import Decimal

from pydantic import BaseModel

NATIVE_TOKEN_SENTINELS = frozenset(
    {
        "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee",
        "0x0000000000000000000000000000000000000000",
    }
)
NATIVE_DECIMALS = 18


def is_native_token(token_address: str) -> bool:
    """Return True if ``token_address`` denotes the chain's native asset."""
    return token_address.lower() in NATIVE_TOKEN_SENTINELS


def format_units(amount: Decimal) -> str:
    """Render a token amount without trailing zeros or exponent notation."""
    return f"{amount.normalize():f}"


class ChainSide(str, enum.Enum):
    """One of the two chains being kept in balance."""

    CHAIN_A = "chain_a"
    CHAIN_B = "chain_b"

    @property
    def other(self) -> ChainSide:
        return ChainSide.CHAIN_B if self is ChainSide.CHAIN_A else ChainSide.CHAIN_A


class Direction(str, enum.Enum):
    """Direction of a rebalance transfer."""

    CHAIN_A_TO_CHAIN_B = "CHAIN_A_TO_CHAIN_B"
    CHAIN_B_TO_CHAIN_A = "CHAIN_B_TO_CHAIN_A"

    @classmethod
    def from_source(cls, source: ChainSide) -> Direction:
        if source is ChainSide.CHAIN_A:
            return cls.CHAIN_A_TO_CHAIN_B
        return cls.CHAIN_B_TO_CHAIN_A

    @property
    def source(self) -> ChainSide:
        if self is Direction.CHAIN_A_TO_CHAIN_B:
            return ChainSide.CHAIN_A
        return ChainSide.CHAIN_B

    @property
    def destination(self) -> ChainSide:
        return self.source.other


class TrackedAsset(BaseModel):
    """The token tracked on one chain, with its rebalance threshold.

    Attributes:
        side: Which chain this asset lives on.
        chain_name: Human-readable chain name (e.g. "ethereum").
        wallet_address: Wallet whose balance is tracked.
        token_address: Token contract, or a native sentinel.
        token_symbol: Display symbol.
        token_decimals: Token decimals.
        threshold: Balance (in token units) the wallet should stay above.
    """

    model_config = {"frozen": True}

    side: ChainSide
    chain_name: str
    wallet_address: str
    token_address: str
    token_symbol: str
    token_decimals: int
    threshold: Decimal


class ChainBalance(BaseModel):
    """Balance of a tracked token on one chain at a point in time."""

    model_config = {"frozen": True}

    side: ChainSide
    raw: int
    decimals: int

    @property
    def amount(self) -> Decimal:
        """Balance in whole-token units."""
        return Decimal(self.raw).scaleb(-self.decimals)
