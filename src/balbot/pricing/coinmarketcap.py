"""CoinMarketCap price lookup by token contract address.

Two calls per lookup: ``/v2/cryptocurrency/info?address=`` resolves the
symbol, ``/v2/cryptocurrency/quotes/latest?symbol=`` returns the USD quote.
"""

from __future__ import annotations

import math
from typing import Any

import aiohttp

from balbot.alerts.notifier_protocol import Notifier
from balbot.logging import get_logger

logger = get_logger("pricing.coinmarketcap")

DEFAULT_BASE_URL = "https://pro-api.coinmarketcap.com"


class CoinMarketCapOracle:
    """USD price oracle backed by the CoinMarketCap Pro API.

    Any failure (HTTP, missing listing, malformed payload) is logged,
    reported to the notifier if one is given, and returned as 0.0.

    Args:
        api_key: CoinMarketCap Pro API key.
        notifier: Optional notifier for lookup failures.
        base_url: API base URL.
        timeout_seconds: Per-request timeout.
        session: Optional shared aiohttp session (for testing).
    """

    def __init__(
        self,
        api_key: str,
        notifier: Notifier | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_key = api_key
        self._notifier = notifier
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def get_price(self, token_address: str) -> float:
        try:
            symbol = await self._resolve_symbol(token_address)
            price = await self._fetch_usd_price(symbol)
        except (aiohttp.ClientError, TimeoutError, LookupError, TypeError, ValueError) as e:
            logger.error("price_lookup_failed", token=token_address, error=str(e))
            if self._notifier is not None:
                await self._notifier.send_error(
                    f"Error fetching price for token address {token_address}: {e}"
                )
            return 0.0

        logger.debug("price_fetched", token=token_address, symbol=symbol, price=price)
        return price

    async def _resolve_symbol(self, token_address: str) -> str:
        body = await self._get_json(
            "/v2/cryptocurrency/info", {"address": token_address}
        )
        data = body.get("data") or {}
        if not isinstance(data, dict) or not data:
            raise LookupError(f"No CoinMarketCap listing for {token_address}")
        info = next(iter(data.values()))
        if isinstance(info, list):
            info = info[0]
        symbol = info["symbol"]
        if not isinstance(symbol, str) or not symbol:
            raise ValueError(f"Malformed symbol for {token_address}: {symbol!r}")
        return symbol

    async def _fetch_usd_price(self, symbol: str) -> float:
        body = await self._get_json(
            "/v2/cryptocurrency/quotes/latest", {"symbol": symbol}
        )
        entries = (body.get("data") or {}).get(symbol)
        if not entries:
            raise LookupError(f"Token {symbol} not found in CoinMarketCap data")
        entry = entries[0] if isinstance(entries, list) else entries
        price = float(entry["quote"]["USD"]["price"])
        if math.isnan(price) or price < 0:
            raise ValueError(f"Invalid USD price for {symbol}: {price}")
        return price

    async def _get_json(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        async with self._session.get(
            f"{self._base_url}{path}",
            params=params,
            headers={"X-CMC_PRO_API_KEY": self._api_key, "Accept": "application/json"},
        ) as resp:
            resp.raise_for_status()
            body = await resp.json()
        if not isinstance(body, dict):
            raise ValueError(f"Unexpected CoinMarketCap payload for {path}")
        return body
