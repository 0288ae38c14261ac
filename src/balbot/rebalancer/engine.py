"""One rebalance tick: resume or plan, then drive the operation to a terminal state.

A tick first looks for an unfinished operation and resumes it. Only when
there is none does it read balances, check gas, and compute a plan. A new
plan is persisted before anything is submitted, and the bridge tx hash is
persisted as soon as it is known, so a crash at any point resumes into the
right step.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from decimal import Decimal

from balbot.alerts.notifier_protocol import Notifier, error_text
from balbot.bridge.monitor import TransactionMonitor
from balbot.bridge.orchestrator import (
    BRIDGE_STEP,
    NATIVE_BRIDGE_STEP,
    BridgeOrchestrator,
    fallback_incomplete,
)
from balbot.chain.reader import BalanceReader
from balbot.errors import InsufficientGasError, PersistenceError, SubmissionError
from balbot.logging import bound_operation, get_logger
from balbot.models.chain import ChainBalance, ChainSide, TrackedAsset, format_units
from balbot.models.operation import OperationStatus, RebalanceOperation
from balbot.monitoring.metrics import MetricsCollector
from balbot.rebalancer.calculator import ImbalanceCalculator
from balbot.rebalancer.models import BalanceAssessment, TickOutcome, TickResult
from balbot.storage.operation_store import OperationStore

logger = get_logger("rebalancer.engine")


class RebalanceEngine:
    """Runs rebalance ticks, one at a time.

    A tick requested while another is still running is skipped, not queued.

    Args:
        store: Operation persistence.
        reader: Balance reader for both chains.
        calculator: Imbalance calculator.
        orchestrator: Submits bridge transactions.
        monitor: Waits for cross-chain completion.
        notifier: Operator notifications.
        assets: Tracked asset per chain.
        min_gas_balance: Native balance (whole units) each wallet must hold.
        metrics: Optional Prometheus collector.
    """

    def __init__(
        self,
        store: OperationStore,
        reader: BalanceReader,
        calculator: ImbalanceCalculator,
        orchestrator: BridgeOrchestrator,
        monitor: TransactionMonitor,
        notifier: Notifier,
        assets: dict[ChainSide, TrackedAsset],
        min_gas_balance: Decimal = Decimal("0.001"),
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._reader = reader
        self._calculator = calculator
        self._orchestrator = orchestrator
        self._monitor = monitor
        self._notifier = notifier
        self._assets = assets
        self._min_gas_balance = min_gas_balance
        self._metrics = metrics
        self._busy = False
        self._last_tick_at: datetime | None = None
        self._last_outcome: str | None = None

    @property
    def is_busy(self) -> bool:
        """Whether a tick is currently running."""
        return self._busy

    @property
    def last_tick_at(self) -> datetime | None:
        return self._last_tick_at

    @property
    def last_outcome(self) -> str | None:
        return self._last_outcome

    @property
    def store(self) -> OperationStore:
        return self._store

    async def tick(self) -> TickResult:
        """Run one tick.

        Returns:
            The tick result. Errors are not converted into a result; they
            are notified and re-raised.
        """
        if self._busy:
            logger.info("tick_skipped_busy")
            self._finish_tick(TickOutcome.SKIPPED.value)
            return TickResult(outcome=TickOutcome.SKIPPED)

        self._busy = True
        if self._metrics is not None:
            self._metrics.set_busy(True)
        try:
            result = await self._run_tick()
        except Exception:
            self._finish_tick("error")
            raise
        finally:
            self._busy = False
            if self._metrics is not None:
                self._metrics.set_busy(False)

        self._finish_tick(result.outcome.value)
        return result

    def _finish_tick(self, outcome: str) -> None:
        self._last_tick_at = datetime.now(UTC)
        self._last_outcome = outcome
        if self._metrics is not None:
            self._metrics.record_tick(outcome)

    async def _run_tick(self) -> TickResult:
        try:
            unfinished = await self._store.find_oldest_unfinished()
        except PersistenceError as e:
            logger.error("store_unavailable", error=str(e))
            await self._notifier.send_error(e)
            raise

        if unfinished is not None:
            logger.info(
                "resuming_operation",
                operation_id=unfinished.id,
                status=unfinished.status.value,
                bridge_txhash=unfinished.bridge_txhash,
            )
            await self._notifier.send_info(
                f"Resuming rebalance operation {unfinished.id} "
                f"({unfinished.status.value})"
            )
            final = await self._execute(unfinished)
            return TickResult(
                outcome=TickOutcome.COMPLETED, operation_id=final.id, resumed=True
            )

        try:
            assessment = await self._assess()
            plan = assessment.plan
            if plan is None:
                await self._notifier.send_info(assessment.describe())
                return TickResult(outcome=TickOutcome.NO_REBALANCE)
            operation = await self._store.insert(
                RebalanceOperation(
                    direction=plan.direction,
                    token_address=plan.source_token,
                    token_decimals=plan.token_decimals,
                    amount_to_bridge=plan.amount,
                    source_chain_balance=format_units(plan.source.balance),
                    dest_chain_balance=format_units(plan.destination.balance),
                )
            )
        except Exception as e:
            logger.error("planning_failed", error=str(e), error_type=type(e).__name__)
            await self._notifier.send_error(e)
            raise

        logger.info(
            "operation_created",
            operation_id=operation.id,
            direction=operation.direction.value,
            amount=str(operation.amount_to_bridge),
        )
        await self._notifier.send_info(plan.describe())
        final = await self._execute(operation)
        return TickResult(outcome=TickOutcome.COMPLETED, operation_id=final.id, plan=plan)

    # --- Planning ---

    async def _assess(self) -> BalanceAssessment:
        balances, native = await asyncio.gather(
            self._reader.read_all(), self._reader.read_native()
        )
        self._check_gas(native)

        assessment = await self._calculator.calculate(balances, self._assets)
        if self._metrics is not None:
            for side, v in assessment.valuations.items():
                self._metrics.update_balance(
                    side.value, float(v.balance_usd), float(v.threshold_usd)
                )
        return assessment

    def _check_gas(self, native: dict[ChainSide, ChainBalance]) -> None:
        for side, balance in native.items():
            if self._metrics is not None:
                self._metrics.update_native_balance(side.value, float(balance.amount))
            if balance.amount < self._min_gas_balance:
                raise InsufficientGasError(
                    f"Insufficient gas on {self._assets[side].chain_name}: "
                    f"{balance.amount} < {self._min_gas_balance}"
                )

    # --- Execution ---

    async def _execute(self, operation: RebalanceOperation) -> RebalanceOperation:
        """Drive ``operation`` to COMPLETED, or mark it FAILED and re-raise."""

        async def record_step(step: str, tx_hash: str) -> None:
            nonlocal operation
            bridge_hash = tx_hash if step in (BRIDGE_STEP, NATIVE_BRIDGE_STEP) else None
            operation = await self._store.update_status(
                operation.id,
                OperationStatus.IN_PROGRESS,
                bridge_txhash=bridge_hash,
                submitted_step=f"{step} {tx_hash}",
            )
            logger.info("transaction_recorded", step=step, tx_hash=tx_hash)
            if bridge_hash is not None:
                await self._notifier.send_info(f"Bridge transaction submitted: {tx_hash}")

        with bound_operation(operation.id):
            started = time.monotonic()
            dest_token = self._assets[operation.direction.destination].token_address
            try:
                if operation.status is OperationStatus.PENDING:
                    operation = await self._store.update_status(
                        operation.id, OperationStatus.IN_PROGRESS
                    )

                # An interrupted multi-hop route is never resubmitted.
                if fallback_incomplete(operation.submitted_steps, dest_token):
                    raise SubmissionError(
                        "Multi-hop bridge was interrupted and needs manual completion; "
                        f"already on chain: {', '.join(operation.submitted_steps)}"
                    )

                if operation.bridge_txhash is None:
                    tx_hash = await self._orchestrator.bridge(
                        operation.token_address,
                        dest_token,
                        operation.amount_to_bridge,
                        operation.direction,
                        on_submitted=record_step,
                    )
                    if operation.bridge_txhash is None:
                        operation = await self._store.update_status(
                            operation.id, OperationStatus.IN_PROGRESS, bridge_txhash=tx_hash
                        )
                        await self._notifier.send_info(
                            f"Bridge transaction submitted: {tx_hash}"
                        )
                else:
                    logger.info("monitoring_only", bridge_txhash=operation.bridge_txhash)

                result = await self._monitor.wait(operation.bridge_txhash, operation.direction)
                operation = await self._store.update_status(
                    operation.id, OperationStatus.COMPLETED
                )
            except Exception as e:
                await self._fail(operation, e)
                raise

            if self._metrics is not None:
                self._metrics.record_operation(
                    OperationStatus.COMPLETED.value, operation.direction.value
                )
                self._metrics.observe_bridge_duration(time.monotonic() - started)

            source = self._assets[operation.direction.source]
            logger.info(
                "operation_completed",
                bridge_txhash=operation.bridge_txhash,
                polls=result.polls,
            )
            await self._notifier.send_info(
                f"Rebalance completed: "
                f"{format_units(operation.amount_units)} "
                f"{source.token_symbol} {operation.direction.value}\n"
                f"Tx: {operation.bridge_txhash}"
            )
            return operation

    async def _fail(self, operation: RebalanceOperation, error: BaseException) -> None:
        message = error_text(error)
        logger.error(
            "operation_failed",
            error=message,
            error_type=type(error).__name__,
            bridge_txhash=operation.bridge_txhash,
        )
        try:
            await self._store.update_status(
                operation.id, OperationStatus.FAILED, error_message=message
            )
        except PersistenceError as pe:
            logger.error("operation_fail_not_persisted", error=str(pe))
        if self._metrics is not None:
            self._metrics.record_operation(
                OperationStatus.FAILED.value, operation.direction.value
            )
        await self._notifier.send_error(
            f"Rebalance operation {operation.id} failed: {message}"
        )
