"""Price oracle protocol and a fixed-price implementation."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class PriceOracle(Protocol):
    """Returns the USD price of one whole token.

    0.0 means "unavailable"; callers must not divide by it.
    """

    async def get_price(self, token_address: str) -> float:
        ...


class StaticPriceOracle:
    """Serves prices from a fixed address -> USD mapping.

    Lookups are case-insensitive. Unknown addresses price at 0.0.
    """

    def __init__(self, prices: dict[str, float]) -> None:
        self._prices = {addr.lower(): float(p) for addr, p in prices.items()}

    async def get_price(self, token_address: str) -> float:
        return self._prices.get(token_address.lower(), 0.0)


class OverridingPriceOracle:
    """Checks fixed overrides first, then falls through to another oracle."""

    def __init__(self, overrides: dict[str, float], fallback: PriceOracle) -> None:
        self._overrides = StaticPriceOracle(overrides)
        self._fallback = fallback

    async def get_price(self, token_address: str) -> float:
        price = await self._overrides.get_price(token_address)
        if price > 0:
            return price
        return await self._fallback.get_price(token_address)
