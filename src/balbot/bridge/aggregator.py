"""HTTP client for the Bungee (Socket) bridge aggregator API.

Endpoints used: ``GET /quote``, ``POST /build-tx`` and ``GET /bridge-status``.
Every response is validated into the models in :mod:`balbot.bridge.models`;
anything missing or malformed surfaces as ``QuoteUnavailableError``.
"""

from __future__ import annotations

from typing import Any

import aiohttp
from pydantic import ValidationError

from balbot.bridge.models import BridgeStatus, BuildTxResult, QuoteRequest, Route
from balbot.errors import QuoteUnavailableError
from balbot.logging import get_logger

DEFAULT_BASE_URL = "https://api.socket.tech/v2"


class AggregatorClient:
    """Async client for route discovery, tx building and transfer status.

    Args:
        api_key: Aggregator API key, sent as the ``API-KEY`` header.
        base_url: API base URL.
        timeout_seconds: Per-request timeout.
        session: Optional shared aiohttp session (for testing).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._logger = get_logger("bridge.aggregator")

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    # --- Endpoints ---

    async def get_quote(self, request: QuoteRequest) -> list[Route]:
        """Return candidate routes, best first. An empty list means no route.

        Raises:
            QuoteUnavailableError: On HTTP failure, ``success: false`` or a
                malformed payload.
        """
        params = {
            "fromChainId": str(request.from_chain_id),
            "toChainId": str(request.to_chain_id),
            "fromTokenAddress": request.from_token.lower(),
            "toTokenAddress": request.to_token.lower(),
            "fromAmount": str(request.amount),
            "userAddress": request.sender,
            "singleTxOnly": "true",
            "sort": "output",
            "defaultSwapSlippage": str(request.slippage_pct),
        }
        if not request.is_swap:
            params.update(
                {
                    "bridgeWithGas": "false",
                    "isContractCall": "false",
                    "showAutoRoutes": "false",
                }
            )

        result = await self._call("GET", "/quote", params=params)
        raw_routes = result.get("routes")
        if not isinstance(raw_routes, list):
            raise QuoteUnavailableError("Aggregator quote response has no routes list")

        try:
            routes = [Route.from_payload(r) for r in raw_routes]
        except (ValidationError, TypeError) as e:
            raise QuoteUnavailableError(f"Malformed route in quote response: {e}") from e

        self._logger.info(
            "quote_received",
            from_chain=request.from_chain_id,
            to_chain=request.to_chain_id,
            from_token=request.from_token,
            to_token=request.to_token,
            amount=str(request.amount),
            routes=len(routes),
        )
        return routes

    async def build_tx(self, route: Route) -> BuildTxResult:
        """Turn a quoted route into ready-to-sign transaction data."""
        result = await self._call("POST", "/build-tx", json={"route": route.raw})
        try:
            return BuildTxResult.model_validate(result)
        except ValidationError as e:
            raise QuoteUnavailableError(f"Malformed build-tx response: {e}") from e

    async def get_bridge_status(
        self, tx_hash: str, from_chain_id: int, to_chain_id: int
    ) -> BridgeStatus:
        """Return the status of both legs of a submitted transfer."""
        result = await self._call(
            "GET",
            "/bridge-status",
            params={
                "transactionHash": tx_hash,
                "fromChainId": str(from_chain_id),
                "toChainId": str(to_chain_id),
            },
        )
        try:
            return BridgeStatus.model_validate(result)
        except ValidationError as e:
            raise QuoteUnavailableError(f"Malformed bridge-status response: {e}") from e

    # --- Transport ---

    async def _call(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform a request and return the ``result`` object of the envelope."""
        try:
            body = await self._request_json(method, path, params=params, json=json)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise QuoteUnavailableError(f"Aggregator {method} {path} failed: {e}") from e

        if not isinstance(body, dict) or not body.get("success"):
            self._logger.error("aggregator_unsuccessful", path=path, body=body)
            raise QuoteUnavailableError(f"Aggregator {path} returned success=false")

        result = body.get("result")
        if not isinstance(result, dict):
            raise QuoteUnavailableError(f"Aggregator {path} response has no result object")
        return result

    async def _request_json(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        async with self._session.request(
            method,
            f"{self._base_url}{path}",
            params=params,
            json=json,
            headers={"API-KEY": self._api_key, "Accept": "application/json"},
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise aiohttp.ClientResponseError(
                    resp.request_info,
                    resp.history,
                    status=resp.status,
                    message=text[:200],
                )
            return await resp.json()
