"""Concurrent balance sensing across both tracked chains."""

from __future__ import annotations

import asyncio

from balbot.chain.client import ChainClient
from balbot.logging import get_logger
from balbot.models.chain import NATIVE_DECIMALS, ChainBalance, ChainSide, TrackedAsset

logger = get_logger("chain.reader")

NATIVE_SENTINEL = "0x0000000000000000000000000000000000000000"


class BalanceReader:
    """Reads the tracked token and native balances on both chains.

    Both chains are read concurrently; a failure on either side raises
    ``ChainReadError`` and the caller abandons the tick.

    Args:
        clients: Chain client per side.
        assets: Tracked asset per side.
    """

    def __init__(
        self,
        clients: dict[ChainSide, ChainClient],
        assets: dict[ChainSide, TrackedAsset],
    ) -> None:
        missing = set(ChainSide) - set(clients) | set(ChainSide) - set(assets)
        if missing:
            raise ValueError(f"Missing chain configuration for {sorted(s.value for s in missing)}")
        self._clients = clients
        self._assets = assets

    async def read_all(self) -> dict[ChainSide, ChainBalance]:
        """Read the tracked token balance on every chain."""
        sides = list(ChainSide)
        raws = await asyncio.gather(
            *(
                self._clients[side].get_balance(
                    self._assets[side].token_address,
                    self._assets[side].wallet_address,
                )
                for side in sides
            )
        )
        balances = {
            side: ChainBalance(
                side=side, raw=raw, decimals=self._assets[side].token_decimals
            )
            for side, raw in zip(sides, raws)
        }
        logger.info(
            "balances_read",
            **{side.value: str(bal.amount) for side, bal in balances.items()},
        )
        return balances

    async def read_native(self) -> dict[ChainSide, ChainBalance]:
        """Read the native (gas) balance of each wallet."""
        sides = list(ChainSide)
        raws = await asyncio.gather(
            *(
                self._clients[side].get_balance(
                    NATIVE_SENTINEL, self._assets[side].wallet_address
                )
                for side in sides
            )
        )
        return {
            side: ChainBalance(side=side, raw=raw, decimals=NATIVE_DECIMALS)
            for side, raw in zip(sides, raws)
        }
