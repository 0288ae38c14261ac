"""Drives one cross-chain transfer through the aggregator.

Direct path: quote, approve if needed, re-quote, estimate gas with a
safety margin, submit, return the hash.

Fallback when no direct route exists: swap the token to the native asset on
the source chain, bridge the native asset, swap it to the destination token
on the destination chain. Each step confirms before the next one is quoted.

Nothing here is rolled back. When a later step fails the error message lists
the steps that already landed on chain. Every fund-moving transaction is
reported through the ``on_submitted`` hook right after it is broadcast, so
the caller can persist it before anything else can fail.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence

from balbot.bridge.aggregator import AggregatorClient
from balbot.bridge.models import ApprovalData, BuildTxResult, QuoteRequest, Route
from balbot.bridge.monitor import TransactionMonitor
from balbot.chain.client import ChainClient, TxRequest
from balbot.errors import (
    ApprovalError,
    BalbotError,
    ChainReadError,
    QuoteUnavailableError,
    SubmissionError,
)
from balbot.logging import get_logger
from balbot.models.chain import ChainSide, Direction, is_native_token

logger = get_logger("bridge.orchestrator")

BRIDGE_STEP = "bridge"
SOURCE_SWAP_STEP = "source swap"
NATIVE_BRIDGE_STEP = "native bridge"
DEST_SWAP_STEP = "destination swap"

SubmitHook = Callable[[str, str], Awaitable[None]]
"""Called with ``(step, tx_hash)`` after each fund-moving transaction is sent."""


def fallback_incomplete(submitted_steps: Sequence[str], dest_token: str) -> bool:
    """Whether recorded steps show a fallback route that stopped partway.

    Entries are ``"<step> <tx hash>"``. A direct bridge, or no steps at
    all, is never incomplete.
    """
    names = {entry.rpartition(" ")[0] for entry in submitted_steps}
    if names <= {BRIDGE_STEP}:
        return False
    if NATIVE_BRIDGE_STEP not in names:
        return True
    return not is_native_token(dest_token) and DEST_SWAP_STEP not in names


class BridgeOrchestrator:
    """Obtains routes and submits the transactions that move funds.

    Args:
        aggregator: Aggregator HTTP client.
        clients: Chain client per side.
        monitor: Used by the fallback path to wait for the bridge leg to
            arrive before the destination swap. Without it the destination
            swap follows the bridge's source-chain receipt.
        gas_buffer_pct: Percentage added on top of the gas estimate.
        bridge_slippage_pct: Slippage passed to cross-chain quotes.
        swap_slippage_pct: Slippage passed to same-chain swap quotes.
        confirmations: Confirmations to wait for on approvals and steps.
    """

    def __init__(
        self,
        aggregator: AggregatorClient,
        clients: dict[ChainSide, ChainClient],
        monitor: TransactionMonitor | None = None,
        gas_buffer_pct: int = 20,
        bridge_slippage_pct: float = 1.0,
        swap_slippage_pct: float = 0.5,
        confirmations: int = 1,
    ) -> None:
        self._aggregator = aggregator
        self._clients = clients
        self._monitor = monitor
        self._gas_buffer_pct = gas_buffer_pct
        self._bridge_slippage_pct = bridge_slippage_pct
        self._swap_slippage_pct = swap_slippage_pct
        self._confirmations = confirmations

    async def bridge(
        self,
        source_token: str,
        dest_token: str,
        amount: int,
        direction: Direction,
        on_submitted: SubmitHook | None = None,
    ) -> str:
        """Move ``amount`` of ``source_token`` across and return the bridge tx hash.

        The hash is returned as soon as the bridge transaction is broadcast;
        cross-chain completion is the monitor's job.

        Args:
            source_token: Token sent from the source chain.
            dest_token: Token wanted on the destination chain.
            amount: Amount in the source token's smallest unit.
            direction: Which chain donates.
            on_submitted: Awaited with ``(step, tx_hash)`` after every
                fund-moving transaction is broadcast. A step is one of
                BRIDGE_STEP on the direct path, or SOURCE_SWAP_STEP,
                NATIVE_BRIDGE_STEP and DEST_SWAP_STEP on the fallback.

        Raises:
            QuoteUnavailableError, ApprovalError, SubmissionError,
            ChainReadError, BridgeFailedError, MonitorTimeoutError.
        """
        src = self._clients[direction.source]
        dst = self._clients[direction.destination]
        logger.info(
            "bridge_started",
            direction=direction.value,
            source_token=source_token,
            dest_token=dest_token,
            amount=str(amount),
        )

        request = QuoteRequest(
            from_chain_id=src.chain_id,
            to_chain_id=dst.chain_id,
            from_token=source_token,
            to_token=dest_token,
            amount=amount,
            sender=src.sender,
            slippage_pct=self._bridge_slippage_pct,
        )
        routes = await self._aggregator.get_quote(request)
        if not routes:
            logger.warning("no_direct_route", direction=direction.value)
            return await self._bridge_via_native(
                src, dst, source_token, dest_token, amount, direction, on_submitted
            )

        return await self._bridge_direct(src, request, routes[0], on_submitted)

    # --- Direct path ---

    async def _bridge_direct(
        self,
        client: ChainClient,
        request: QuoteRequest,
        route: Route,
        on_submitted: SubmitHook | None,
    ) -> str:
        build = await self._aggregator.build_tx(route)
        if build.approval_data is not None:
            await self._ensure_allowance(client, request.from_token, build.approval_data)

        # Quotes expire; the approval wait can take a while.
        fresh = await self._aggregator.get_quote(request)
        if not fresh:
            raise QuoteUnavailableError(
                f"No bridge route on re-quote for {request.from_token} "
                f"({request.from_chain_id} -> {request.to_chain_id})"
            )
        build = await self._aggregator.build_tx(fresh[0])
        tx_hash = await self._submit(client, build)
        if on_submitted is not None:
            await on_submitted(BRIDGE_STEP, tx_hash)
        return tx_hash

    # --- Fallback path ---

    async def _bridge_via_native(
        self,
        src: ChainClient,
        dst: ChainClient,
        source_token: str,
        dest_token: str,
        amount: int,
        direction: Direction,
        on_submitted: SubmitHook | None,
    ) -> str:
        landed: list[str] = []
        try:
            bridged_amount = amount
            if not is_native_token(source_token):
                swap = QuoteRequest(
                    from_chain_id=src.chain_id,
                    to_chain_id=src.chain_id,
                    from_token=source_token,
                    to_token=src.native_token_address,
                    amount=amount,
                    sender=src.sender,
                    slippage_pct=self._swap_slippage_pct,
                )
                route = await self._best_route(swap, SOURCE_SWAP_STEP)
                await self._execute_step(
                    src, swap, route, SOURCE_SWAP_STEP, landed, on_submitted
                )
                bridged_amount = route.to_amount

            bridge = QuoteRequest(
                from_chain_id=src.chain_id,
                to_chain_id=dst.chain_id,
                from_token=src.native_token_address,
                to_token=dst.native_token_address,
                amount=bridged_amount,
                sender=src.sender,
                slippage_pct=self._bridge_slippage_pct,
            )
            route = await self._best_route(bridge, NATIVE_BRIDGE_STEP)
            bridge_hash = await self._execute_step(
                src, bridge, route, NATIVE_BRIDGE_STEP, landed, on_submitted
            )
            received = route.to_amount

            if self._monitor is not None:
                await self._monitor.wait(bridge_hash, direction)

            if not is_native_token(dest_token):
                final = QuoteRequest(
                    from_chain_id=dst.chain_id,
                    to_chain_id=dst.chain_id,
                    from_token=dst.native_token_address,
                    to_token=dest_token,
                    amount=received,
                    sender=dst.sender,
                    slippage_pct=self._swap_slippage_pct,
                )
                route = await self._best_route(final, DEST_SWAP_STEP)
                await self._execute_step(
                    dst, final, route, DEST_SWAP_STEP, landed, on_submitted
                )
        except BalbotError as e:
            if landed:
                raise type(e)(f"{e}; already on chain: {', '.join(landed)}") from e
            raise

        logger.info("multi_hop_bridge_completed", steps=landed)
        return bridge_hash

    async def _best_route(self, request: QuoteRequest, label: str) -> Route:
        routes = await self._aggregator.get_quote(request)
        if not routes:
            raise QuoteUnavailableError(
                f"No {label} route for {request.from_token} -> {request.to_token} "
                f"on chain {request.from_chain_id}"
            )
        route = routes[0]
        if route.to_amount <= 0:
            raise QuoteUnavailableError(f"{label} route quotes a zero output amount")
        return route

    async def _execute_step(
        self,
        client: ChainClient,
        request: QuoteRequest,
        route: Route,
        label: str,
        landed: list[str],
        on_submitted: SubmitHook | None,
    ) -> str:
        """Build, approve if needed, submit, and wait for one fallback step.

        The step counts as landed once broadcast, even if it later reverts.
        """
        build = await self._aggregator.build_tx(route)
        if build.approval_data is not None:
            await self._ensure_allowance(client, request.from_token, build.approval_data)
        tx_hash = await self._submit(client, build)
        landed.append(f"{label} {tx_hash}")
        if on_submitted is not None:
            await on_submitted(label, tx_hash)
        if not await client.wait_for_receipt(tx_hash, self._confirmations):
            raise SubmissionError(f"{label} transaction {tx_hash} reverted on {client.name}")
        logger.info("bridge_step_confirmed", step=label, tx_hash=tx_hash, chain=client.name)
        return tx_hash

    # --- Shared steps ---

    async def _ensure_allowance(
        self, client: ChainClient, token_address: str, approval: ApprovalData
    ) -> None:
        """Approve ``approval.spender`` only when the current allowance is short."""
        token = approval.token_address or token_address
        if is_native_token(token):
            return

        owner = client.sender
        try:
            current = await client.get_allowance(token, owner, approval.spender)
        except ChainReadError as e:
            raise ApprovalError(f"Could not read allowance: {e}") from e

        logger.info(
            "allowance_checked",
            token=token,
            spender=approval.spender,
            current=str(current),
            required=str(approval.amount),
        )
        if current >= approval.amount:
            return

        approval_hash = await client.approve(token, approval.spender, approval.amount)
        try:
            confirmed = await client.wait_for_receipt(approval_hash, self._confirmations)
        except ChainReadError as e:
            raise ApprovalError(f"Approval {approval_hash} not confirmed: {e}") from e
        if not confirmed:
            raise ApprovalError(f"Approval transaction {approval_hash} reverted on {client.name}")

    async def _submit(self, client: ChainClient, build: BuildTxResult) -> str:
        tx = TxRequest(to=build.tx_target, data=build.tx_data, value=build.value)
        estimate = await client.estimate_gas(tx)
        tx.gas_limit = estimate * (100 + self._gas_buffer_pct) // 100
        logger.info(
            "gas_estimated",
            chain=client.name,
            estimate=estimate,
            gas_limit=tx.gas_limit,
        )
        return await client.send_transaction(tx)
