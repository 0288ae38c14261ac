"""Polls the aggregator until a cross-chain transfer settles."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from dataclasses import dataclass

from balbot.bridge.aggregator import AggregatorClient
from balbot.bridge.models import BridgeStatus, TransferStatus
from balbot.errors import BridgeFailedError, MonitorTimeoutError
from balbot.logging import get_logger
from balbot.models.chain import ChainSide, Direction
from balbot.utils.retry import BackoffPolicy, Sleep, poll_until

logger = get_logger("bridge.monitor")


@dataclass(frozen=True)
class MonitorResult:
    """A transfer that both legs report COMPLETED.

    Attributes:
        tx_hash: Source-chain transaction hash.
        polls: Number of status polls made.
        waited_seconds: Time spent sleeping between polls.
    """

    tx_hash: str
    polls: int
    waited_seconds: float


class TransactionMonitor:
    """Waits for the aggregator to report a transfer complete or failed.

    Polling is bounded by ``policy``. Running out of attempts raises
    ``MonitorTimeoutError``, which is distinct from a reported failure
    (``BridgeFailedError``).

    Args:
        aggregator: Aggregator client used for the bridge-status endpoint.
        chain_ids: EVM chain id per side.
        policy: Backoff policy between polls.
        sleep: Sleep function (injectable for a fake clock).
        rng: Jitter source returning floats in [0, 1).
    """

    def __init__(
        self,
        aggregator: AggregatorClient,
        chain_ids: dict[ChainSide, int],
        policy: BackoffPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._aggregator = aggregator
        self._chain_ids = chain_ids
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._rng = rng

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def wait(self, tx_hash: str, direction: Direction) -> MonitorResult:
        """Block until ``tx_hash`` settles.

        Raises:
            BridgeFailedError: If either leg is reported FAILED.
            MonitorTimeoutError: If the attempt cap is reached first.
            QuoteUnavailableError: If the status endpoint is unreachable.
        """
        from_chain = self._chain_ids[direction.source]
        to_chain = self._chain_ids[direction.destination]
        polls = 0

        async def _check() -> BridgeStatus | None:
            nonlocal polls
            polls += 1
            status = await self._aggregator.get_bridge_status(tx_hash, from_chain, to_chain)
            overall = status.overall
            logger.debug(
                "bridge_status_polled",
                tx_hash=tx_hash,
                poll=polls,
                source=status.source.value,
                destination=status.destination.value,
            )
            if overall is TransferStatus.FAILED:
                raise BridgeFailedError(
                    f"Bridge transaction {tx_hash} failed "
                    f"(source={status.source.value}, destination={status.destination.value})"
                )
            if overall is TransferStatus.COMPLETED:
                return status
            return None

        outcome = await poll_until(_check, self._policy, sleep=self._sleep, rng=self._rng)
        if outcome.exhausted:
            logger.error("bridge_monitor_timeout", tx_hash=tx_hash, polls=outcome.attempts)
            raise MonitorTimeoutError(
                f"Transaction monitoring timed out for {tx_hash} "
                f"after {outcome.attempts} polls"
            )

        logger.info(
            "bridge_completed",
            tx_hash=tx_hash,
            polls=outcome.attempts,
            waited_seconds=round(outcome.waited_seconds, 2),
        )
        return MonitorResult(
            tx_hash=tx_hash, polls=outcome.attempts, waited_seconds=outcome.waited_seconds
        )
