"""Tests for the rebalance engine: planning, resume and failure handling."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from balbot.bridge.monitor import MonitorResult
from balbot.bridge.orchestrator import SubmitHook
from balbot.errors import (
    BridgeFailedError,
    InsufficientGasError,
    MonitorTimeoutError,
    PersistenceError,
    PriceUnavailableError,
    SubmissionError,
)
from balbot.models.chain import ChainBalance, ChainSide, Direction, TrackedAsset
from balbot.models.operation import OperationStatus, RebalanceOperation
from balbot.monitoring.metrics import MetricsCollector
from balbot.pricing.oracle import StaticPriceOracle
from balbot.rebalancer.calculator import ImbalanceCalculator
from balbot.rebalancer.engine import RebalanceEngine
from balbot.rebalancer.models import TickOutcome
from balbot.storage.operation_store import InMemoryOperationStore, OperationStore

USDC_ETH = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDC_MANTLE = "0x09Bc4E0D864854c6aFB6eB9A9cdF58aC190D0dF9"
WALLET = "0x1111111111111111111111111111111111111111"

ASSETS = {
    ChainSide.CHAIN_A: TrackedAsset(
        side=ChainSide.CHAIN_A,
        chain_name="ethereum",
        wallet_address=WALLET,
        token_address=USDC_ETH,
        token_symbol="USDC",
        token_decimals=6,
        threshold=Decimal("200"),
    ),
    ChainSide.CHAIN_B: TrackedAsset(
        side=ChainSide.CHAIN_B,
        chain_name="mantle",
        wallet_address=WALLET,
        token_address=USDC_MANTLE,
        token_symbol="USDC",
        token_decimals=6,
        threshold=Decimal("200"),
    ),
}


def _balances(a: int, b: int) -> dict[ChainSide, ChainBalance]:
    return {
        ChainSide.CHAIN_A: ChainBalance(side=ChainSide.CHAIN_A, raw=a * 10**6, decimals=6),
        ChainSide.CHAIN_B: ChainBalance(side=ChainSide.CHAIN_B, raw=b * 10**6, decimals=6),
    }


def _native(a: float = 1.0, b: float = 1.0) -> dict[ChainSide, ChainBalance]:
    return {
        side: ChainBalance(side=side, raw=int(Decimal(str(v)) * 10**18), decimals=18)
        for side, v in ((ChainSide.CHAIN_A, a), (ChainSide.CHAIN_B, b))
    }


def _operation(**overrides: object) -> RebalanceOperation:
    data: dict[str, object] = {
        "direction": Direction.CHAIN_A_TO_CHAIN_B,
        "token_address": USDC_ETH,
        "token_decimals": 6,
        "amount_to_bridge": 100_000_000,
    }
    data.update(overrides)
    return RebalanceOperation(**data)


class Harness:
    """Engine wired to an in-memory store and mocked chain/bridge layers."""

    def __init__(
        self,
        balances: dict[ChainSide, ChainBalance],
        metrics: bool = False,
        prices: dict[str, float] | None = None,
        store: OperationStore | None = None,
    ) -> None:
        self.store = store or InMemoryOperationStore()
        self.reader = MagicMock()
        self.reader.read_all = AsyncMock(return_value=balances)
        self.reader.read_native = AsyncMock(return_value=_native())
        self.oracle = StaticPriceOracle(prices or {USDC_ETH: 1.0, USDC_MANTLE: 1.0})
        self.orchestrator = MagicMock()
        self.orchestrator.bridge = AsyncMock(return_value="0xbridge")
        self.monitor = MagicMock()
        self.monitor.wait = AsyncMock(
            side_effect=lambda h, d: MonitorResult(tx_hash=h, polls=2, waited_seconds=20.0)
        )
        self.notifier = MagicMock()
        self.notifier.send_info = AsyncMock(return_value=True)
        self.notifier.send_error = AsyncMock(return_value=True)
        self.metrics = MetricsCollector() if metrics else None
        self.engine = RebalanceEngine(
            store=self.store,
            reader=self.reader,
            calculator=ImbalanceCalculator(self.oracle),
            orchestrator=self.orchestrator,
            monitor=self.monitor,
            notifier=self.notifier,
            assets=ASSETS,
            min_gas_balance=Decimal("0.01"),
            metrics=self.metrics,
        )

    def info_texts(self) -> list[str]:
        return [c.args[0] for c in self.notifier.send_info.await_args_list]

    def error_texts(self) -> list[str]:
        return [str(c.args[0]) for c in self.notifier.send_error.await_args_list]


class TestPlanning:
    """Ticks that start from a clean store."""

    async def test_no_rebalance(self) -> None:
        h = Harness(_balances(250, 250))
        result = await h.engine.tick()

        assert result.outcome is TickOutcome.NO_REBALANCE
        h.orchestrator.bridge.assert_not_called()
        assert await h.store.latest() is None
        assert h.info_texts() == [
            "No rebalance needed\n"
            "chain_a: 250 USDC ($250.00, threshold $200.00)\n"
            "chain_b: 250 USDC ($250.00, threshold $200.00)"
        ]
        assert h.engine.last_outcome == "no_rebalance"
        assert h.engine.last_tick_at is not None

    async def test_rebalance_completes(self) -> None:
        h = Harness(_balances(500, 100))
        result = await h.engine.tick()

        assert result.outcome is TickOutcome.COMPLETED
        assert result.plan is not None
        assert not result.resumed
        h.orchestrator.bridge.assert_awaited_once()
        assert h.orchestrator.bridge.await_args.args == (
            USDC_ETH, USDC_MANTLE, 100_000_000, Direction.CHAIN_A_TO_CHAIN_B
        )
        h.monitor.wait.assert_awaited_once_with("0xbridge", Direction.CHAIN_A_TO_CHAIN_B)

        op = await h.store.get(result.operation_id)
        assert op is not None
        assert op.status is OperationStatus.COMPLETED
        assert op.bridge_txhash == "0xbridge"
        assert op.source_chain_balance == "500"
        assert op.dest_chain_balance == "100"
        assert op.completed_at is not None

    async def test_notifications_in_order(self) -> None:
        h = Harness(_balances(500, 100))
        await h.engine.tick()

        plan_msg, submitted, completed = h.info_texts()
        assert plan_msg.startswith("Rebalance needed")
        assert submitted == "Bridge transaction submitted: 0xbridge"
        assert completed == "Rebalance completed: 100 USDC CHAIN_A_TO_CHAIN_B\nTx: 0xbridge"
        h.notifier.send_error.assert_not_called()

    async def test_hash_persisted_before_monitoring(self) -> None:
        h = Harness(_balances(500, 100))
        seen: list[RebalanceOperation | None] = []

        async def wait(tx_hash: str, direction: Direction) -> MonitorResult:
            seen.append(await h.store.find_oldest_unfinished())
            return MonitorResult(tx_hash=tx_hash, polls=1, waited_seconds=0.0)

        h.monitor.wait = AsyncMock(side_effect=wait)
        await h.engine.tick()

        assert seen[0] is not None
        assert seen[0].status is OperationStatus.IN_PROGRESS
        assert seen[0].bridge_txhash == "0xbridge"

    async def test_completed_operation_is_not_repeated(self) -> None:
        h = Harness(_balances(300, 300))
        done = _operation().transition(OperationStatus.IN_PROGRESS).transition(
            OperationStatus.COMPLETED, bridge_txhash="0xold"
        )
        await h.store.insert(done)

        result = await h.engine.tick()

        assert result.outcome is TickOutcome.NO_REBALANCE
        h.orchestrator.bridge.assert_not_called()
        h.monitor.wait.assert_not_called()

    async def test_insufficient_gas(self) -> None:
        h = Harness(_balances(500, 100))
        h.reader.read_native.return_value = _native(a=1.0, b=0.001)

        with pytest.raises(InsufficientGasError, match="mantle"):
            await h.engine.tick()

        assert await h.store.latest() is None
        h.orchestrator.bridge.assert_not_called()
        assert "Insufficient gas on mantle" in h.error_texts()[0]
        assert h.engine.last_outcome == "error"

    async def test_price_unavailable(self) -> None:
        h = Harness(_balances(500, 100), prices={USDC_ETH: 1.0})

        with pytest.raises(PriceUnavailableError):
            await h.engine.tick()

        assert await h.store.latest() is None
        h.notifier.send_error.assert_awaited_once()

    async def test_store_unavailable(self) -> None:
        store = MagicMock()
        store.find_oldest_unfinished = AsyncMock(
            side_effect=PersistenceError("Query failed: connection refused")
        )
        h = Harness(_balances(500, 100), store=store)

        with pytest.raises(PersistenceError):
            await h.engine.tick()

        h.reader.read_all.assert_not_called()
        assert "connection refused" in h.error_texts()[0]


class TestResume:
    """Ticks that find an unfinished operation in the store."""

    async def test_pending_without_hash_is_submitted(self) -> None:
        h = Harness(_balances(500, 100))
        pending = await h.store.insert(_operation(amount_to_bridge=42_000_000))

        result = await h.engine.tick()

        assert result.outcome is TickOutcome.COMPLETED
        assert result.resumed
        assert result.operation_id == pending.id
        h.reader.read_all.assert_not_called()
        h.orchestrator.bridge.assert_awaited_once()
        assert h.orchestrator.bridge.await_args.args == (
            USDC_ETH, USDC_MANTLE, 42_000_000, Direction.CHAIN_A_TO_CHAIN_B
        )
        assert (await h.store.get(pending.id)).status is OperationStatus.COMPLETED
        assert h.info_texts()[0] == f"Resuming rebalance operation {pending.id} (PENDING)"

    async def test_in_progress_with_hash_only_monitors(self) -> None:
        h = Harness(_balances(500, 100))
        op = await h.store.insert(_operation(direction=Direction.CHAIN_B_TO_CHAIN_A))
        await h.store.update_status(op.id, OperationStatus.IN_PROGRESS)
        await h.store.update_status(op.id, OperationStatus.IN_PROGRESS, bridge_txhash="0xabc")

        result = await h.engine.tick()

        assert result.resumed
        h.orchestrator.bridge.assert_not_called()
        h.monitor.wait.assert_awaited_once_with("0xabc", Direction.CHAIN_B_TO_CHAIN_A)
        final = await h.store.get(op.id)
        assert final.status is OperationStatus.COMPLETED
        assert final.bridge_txhash == "0xabc"

    async def test_resumed_failure_marks_failed(self) -> None:
        h = Harness(_balances(500, 100))
        op = await h.store.insert(_operation())
        await h.store.update_status(op.id, OperationStatus.IN_PROGRESS)
        await h.store.update_status(op.id, OperationStatus.IN_PROGRESS, bridge_txhash="0xabc")
        h.monitor.wait.side_effect = BridgeFailedError("Bridge transaction 0xabc failed")

        with pytest.raises(BridgeFailedError):
            await h.engine.tick()

        final = await h.store.get(op.id)
        assert final.status is OperationStatus.FAILED
        assert final.error_message == "Bridge transaction 0xabc failed"
        assert await h.store.find_oldest_unfinished() is None

    async def _in_progress(self, h: Harness, *steps: str) -> RebalanceOperation:
        op = await h.store.insert(_operation())
        op = await h.store.update_status(op.id, OperationStatus.IN_PROGRESS)
        for step in steps:
            name, _, tx_hash = step.rpartition(" ")
            op = await h.store.update_status(
                op.id,
                OperationStatus.IN_PROGRESS,
                bridge_txhash=tx_hash if name == "native bridge" else None,
                submitted_step=step,
            )
        return op

    async def test_interrupted_source_swap_is_not_resubmitted(self) -> None:
        h = Harness(_balances(500, 100))
        op = await self._in_progress(h, "source swap 0xswap")

        with pytest.raises(SubmissionError, match="already on chain: source swap 0xswap"):
            await h.engine.tick()

        h.orchestrator.bridge.assert_not_called()
        h.monitor.wait.assert_not_called()
        final = await h.store.get(op.id)
        assert final.status is OperationStatus.FAILED
        assert "needs manual completion" in final.error_message
        assert "source swap 0xswap" in h.error_texts()[0]

    async def test_missing_destination_swap_is_not_resubmitted(self) -> None:
        h = Harness(_balances(500, 100))
        op = await self._in_progress(h, "source swap 0xswap", "native bridge 0xbridge")

        with pytest.raises(SubmissionError):
            await h.engine.tick()

        h.orchestrator.bridge.assert_not_called()
        h.monitor.wait.assert_not_called()
        final = await h.store.get(op.id)
        assert final.status is OperationStatus.FAILED
        assert final.bridge_txhash == "0xbridge"
        assert "source swap 0xswap, native bridge 0xbridge" in final.error_message

    async def test_finished_fallback_only_monitors(self) -> None:
        h = Harness(_balances(500, 100))
        op = await self._in_progress(
            h, "source swap 0xswap", "native bridge 0xbridge", "destination swap 0xfinal"
        )

        result = await h.engine.tick()

        assert result.resumed
        h.orchestrator.bridge.assert_not_called()
        h.monitor.wait.assert_awaited_once_with("0xbridge", Direction.CHAIN_A_TO_CHAIN_B)
        assert (await h.store.get(op.id)).status is OperationStatus.COMPLETED


class TestSubmittedSteps:
    """Transactions reported by the orchestrator as they are broadcast."""

    @staticmethod
    async def _fallback(*args: object, on_submitted: SubmitHook) -> str:
        await on_submitted("source swap", "0xswap")
        await on_submitted("native bridge", "0xbridge")
        await on_submitted("destination swap", "0xfinal")
        return "0xbridge"

    async def test_fallback_steps_recorded(self) -> None:
        h = Harness(_balances(500, 100))
        h.orchestrator.bridge = AsyncMock(side_effect=self._fallback)

        result = await h.engine.tick()

        op = await h.store.get(result.operation_id)
        assert op.status is OperationStatus.COMPLETED
        assert op.bridge_txhash == "0xbridge"
        assert op.submitted_steps == (
            "source swap 0xswap",
            "native bridge 0xbridge",
            "destination swap 0xfinal",
        )
        assert h.info_texts().count("Bridge transaction submitted: 0xbridge") == 1

    async def test_direct_bridge_recorded(self) -> None:
        h = Harness(_balances(500, 100))

        async def direct(*args: object, on_submitted: SubmitHook) -> str:
            await on_submitted("bridge", "0xdirect")
            return "0xdirect"

        h.orchestrator.bridge = AsyncMock(side_effect=direct)
        result = await h.engine.tick()

        op = await h.store.get(result.operation_id)
        assert op.bridge_txhash == "0xdirect"
        assert op.submitted_steps == ("bridge 0xdirect",)
        h.monitor.wait.assert_awaited_once_with("0xdirect", Direction.CHAIN_A_TO_CHAIN_B)

    async def test_failure_after_bridge_leg_keeps_hash(self) -> None:
        h = Harness(_balances(500, 100))

        async def fails_late(*args: object, on_submitted: SubmitHook) -> str:
            await on_submitted("source swap", "0xswap")
            await on_submitted("native bridge", "0xbridge")
            raise SubmissionError("destination swap route missing")

        h.orchestrator.bridge = AsyncMock(side_effect=fails_late)

        with pytest.raises(SubmissionError):
            await h.engine.tick()

        op = await h.store.latest()
        assert op.status is OperationStatus.FAILED
        assert op.bridge_txhash == "0xbridge"
        assert op.submitted_steps == ("source swap 0xswap", "native bridge 0xbridge")
        h.monitor.wait.assert_not_called()


class TestFailures:
    """Errors raised after an operation was persisted."""

    async def test_submission_failure(self) -> None:
        h = Harness(_balances(500, 100))
        h.orchestrator.bridge.side_effect = SubmissionError("Send failed on ethereum: nonce")

        with pytest.raises(SubmissionError):
            await h.engine.tick()

        op = await h.store.latest()
        assert op is not None
        assert op.status is OperationStatus.FAILED
        assert op.bridge_txhash is None
        assert op.error_message == "Send failed on ethereum: nonce"
        assert h.error_texts() == [
            f"Rebalance operation {op.id} failed: Send failed on ethereum: nonce"
        ]

    async def test_monitor_timeout_keeps_hash(self) -> None:
        h = Harness(_balances(500, 100))
        h.monitor.wait.side_effect = MonitorTimeoutError("timed out")

        with pytest.raises(MonitorTimeoutError):
            await h.engine.tick()

        op = await h.store.latest()
        assert op.status is OperationStatus.FAILED
        assert op.bridge_txhash == "0xbridge"

    async def test_failed_operation_allows_new_plan(self) -> None:
        h = Harness(_balances(500, 100))
        h.orchestrator.bridge.side_effect = [SubmissionError("boom"), "0xsecond"]

        with pytest.raises(SubmissionError):
            await h.engine.tick()
        result = await h.engine.tick()

        assert result.outcome is TickOutcome.COMPLETED
        assert not result.resumed
        assert (await h.store.get(result.operation_id)).bridge_txhash == "0xsecond"


class TestConcurrency:
    async def test_overlapping_tick_is_skipped(self) -> None:
        h = Harness(_balances(500, 100))
        release = asyncio.Event()

        async def slow_bridge(*args: object, **kwargs: object) -> str:
            await release.wait()
            return "0xbridge"

        h.orchestrator.bridge = AsyncMock(side_effect=slow_bridge)
        first = asyncio.create_task(h.engine.tick())
        while not h.orchestrator.bridge.await_count:
            await asyncio.sleep(0)

        assert h.engine.is_busy
        skipped = await h.engine.tick()
        assert skipped.outcome is TickOutcome.SKIPPED

        release.set()
        result = await first
        assert result.outcome is TickOutcome.COMPLETED
        assert not h.engine.is_busy
        assert h.orchestrator.bridge.await_count == 1


class TestMetrics:
    async def test_tick_and_operation_metrics(self) -> None:
        h = Harness(_balances(500, 100), metrics=True)
        await h.engine.tick()

        registry = h.metrics.registry
        assert registry.get_sample_value(
            "balbot_ticks_total", {"outcome": "completed"}
        ) == 1.0
        assert registry.get_sample_value(
            "balbot_operations_total",
            {"status": "COMPLETED", "direction": "CHAIN_A_TO_CHAIN_B"},
        ) == 1.0
        assert registry.get_sample_value("balbot_balance_usd", {"chain": "chain_a"}) == 500.0
        assert registry.get_sample_value("balbot_engine_busy") == 0.0
        assert registry.get_sample_value("balbot_bridge_duration_seconds_count") == 1.0

    async def test_failed_tick_counted_as_error(self) -> None:
        h = Harness(_balances(500, 100), metrics=True)
        h.orchestrator.bridge.side_effect = SubmissionError("boom")

        with pytest.raises(SubmissionError):
            await h.engine.tick()

        registry = h.metrics.registry
        assert registry.get_sample_value("balbot_ticks_total", {"outcome": "error"}) == 1.0
        assert registry.get_sample_value(
            "balbot_operations_total",
            {"status": "FAILED", "direction": "CHAIN_A_TO_CHAIN_B"},
        ) == 1.0
