"""End-to-end rebalance flow with simulated chains and aggregator.

Real engine, reader, calculator, orchestrator, monitor and aggregator
response parsing; only RPC and HTTP are replaced by an in-memory ledger.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import pytest

from balbot.bridge.aggregator import AggregatorClient
from balbot.bridge.monitor import TransactionMonitor
from balbot.bridge.orchestrator import BridgeOrchestrator
from balbot.errors import SubmissionError
from balbot.chain.client import TxRequest
from balbot.chain.reader import BalanceReader
from balbot.models.chain import ChainSide, TrackedAsset, is_native_token
from balbot.models.operation import OperationStatus
from balbot.pricing.oracle import StaticPriceOracle
from balbot.rebalancer.calculator import ImbalanceCalculator
from balbot.rebalancer.engine import RebalanceEngine
from balbot.rebalancer.models import TickOutcome
from balbot.storage.operation_store import InMemoryOperationStore
from balbot.utils.retry import BackoffPolicy

USDC_ETH = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDC_MANTLE = "0x09Bc4E0D864854c6aFB6eB9A9cdF58aC190D0dF9"
WALLET = "0x1111111111111111111111111111111111111111"
GATEWAY = "0x3a23F943181408EAC424116Af7b7790c94Cb97a5"
CHAIN_IDS = {ChainSide.CHAIN_A: 1, ChainSide.CHAIN_B: 5000}


# ---------------------------------------------------------------------------
# Simulated world
# ---------------------------------------------------------------------------


class World:
    """Token balances on both chains plus transfers in flight."""

    def __init__(self, balance_a: int, balance_b: int, polls_to_settle: int = 2) -> None:
        self.balances = {ChainSide.CHAIN_A: balance_a, ChainSide.CHAIN_B: balance_b}
        self.allowances: dict[ChainSide, int] = {ChainSide.CHAIN_A: 0, ChainSide.CHAIN_B: 0}
        self.in_flight: dict[str, tuple[ChainSide, int]] = {}
        self.polls: dict[str, int] = {}
        self.sent: list[str] = []
        self.polls_to_settle = polls_to_settle
        self._nonce = 0

    def next_hash(self) -> str:
        self._nonce += 1
        return f"0x{self._nonce:064x}"

    def bridge_status(self, tx_hash: str) -> dict[str, str]:
        self.polls[tx_hash] = self.polls.get(tx_hash, 0) + 1
        if self.polls[tx_hash] < self.polls_to_settle:
            return {"sourceTxStatus": "COMPLETED", "destinationTxStatus": "PENDING"}
        if tx_hash in self.in_flight:
            side, amount = self.in_flight.pop(tx_hash)
            self.balances[side] += amount
        return {"sourceTxStatus": "COMPLETED", "destinationTxStatus": "COMPLETED"}


class FakeChainClient:
    """ChainClient stand-in backed by the world ledger."""

    def __init__(self, world: World, side: ChainSide, name: str) -> None:
        self.world = world
        self.side = side
        self.name = name
        self.chain_id = CHAIN_IDS[side]
        self.sender = WALLET
        self.native_token_address = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

    async def get_balance(self, token_address: str, wallet_address: str) -> int:
        if is_native_token(token_address):
            return 10**18
        return self.world.balances[self.side]

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return self.world.allowances[self.side]

    async def approve(self, token_address: str, spender: str, amount: int) -> str:
        self.world.allowances[self.side] = amount
        return self.world.next_hash()

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> bool:
        return True

    async def estimate_gas(self, tx: TxRequest) -> int:
        return 150_000

    async def send_transaction(self, tx: TxRequest) -> str:
        amount = int(tx.data, 16)
        assert tx.gas_limit == 180_000
        assert self.world.allowances[self.side] >= amount
        self.world.balances[self.side] -= amount
        tx_hash = self.world.next_hash()
        self.world.in_flight[tx_hash] = (self.side.other, amount)
        self.world.sent.append(tx_hash)
        return tx_hash


class FakeAggregator(AggregatorClient):
    """AggregatorClient whose HTTP layer answers from the world."""

    def __init__(self, world: World) -> None:
        super().__init__(api_key="test-key")
        self.world = world

    async def _request_json(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if path == "/quote":
            assert params is not None
            route = {
                "routeId": f"route-{params['fromAmount']}",
                "fromAmount": params["fromAmount"],
                "toAmount": params["fromAmount"],
                "fromToken": params["fromTokenAddress"],
            }
            return {"success": True, "result": {"routes": [route]}}
        if path == "/build-tx":
            assert json is not None
            route = json["route"]
            amount = int(route["fromAmount"])
            return {
                "success": True,
                "result": {
                    "txData": hex(amount),
                    "txTarget": GATEWAY,
                    "value": "0",
                    "approvalData": {
                        "allowanceTarget": GATEWAY,
                        "minimumApprovalAmount": str(amount),
                        "approvalTokenAddress": route["fromToken"],
                    },
                },
            }
        if path == "/bridge-status":
            assert params is not None
            return {"success": True, "result": self.world.bridge_status(params["transactionHash"])}
        raise AssertionError(f"unexpected path {path}")


class NoDirectRouteAggregator(FakeAggregator):
    """Only quotes same-chain swaps and native-asset bridges."""

    async def _request_json(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if (
            path == "/quote"
            and params is not None
            and params["fromChainId"] != params["toChainId"]
            and not is_native_token(params["fromTokenAddress"])
        ):
            return {"success": True, "result": {"routes": []}}
        return await super()._request_json(method, path, params=params, json=json)


class RecordingNotifier:
    def __init__(self) -> None:
        self.info: list[str] = []
        self.errors: list[str] = []

    async def send_info(self, text: str) -> bool:
        self.info.append(text)
        return True

    async def send_error(self, error: str | BaseException) -> bool:
        self.errors.append(str(error))
        return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _assets() -> dict[ChainSide, TrackedAsset]:
    return {
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


async def _no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def _engine(
    world: World,
    store: InMemoryOperationStore,
    notifier: RecordingNotifier,
    monitor: Any = None,
    aggregator_cls: type[FakeAggregator] = FakeAggregator,
) -> RebalanceEngine:
    assets = _assets()
    clients = {
        ChainSide.CHAIN_A: FakeChainClient(world, ChainSide.CHAIN_A, "ethereum"),
        ChainSide.CHAIN_B: FakeChainClient(world, ChainSide.CHAIN_B, "mantle"),
    }
    aggregator = aggregator_cls(world)
    monitor = monitor or TransactionMonitor(
        aggregator,
        chain_ids=CHAIN_IDS,
        policy=BackoffPolicy(base_delay=5.0, factor=1.1, max_delay=30.0, max_attempts=10),
        sleep=_no_sleep,
    )
    return RebalanceEngine(
        store=store,
        reader=BalanceReader(clients, assets),  # type: ignore[arg-type]
        calculator=ImbalanceCalculator(StaticPriceOracle({USDC_ETH: 1.0, USDC_MANTLE: 1.0})),
        orchestrator=BridgeOrchestrator(
            aggregator, clients, monitor=monitor  # type: ignore[arg-type]
        ),
        monitor=monitor,
        notifier=notifier,
        assets=assets,
    )


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestEndToEnd:
    async def test_rebalance_then_idle(self) -> None:
        world = World(balance_a=600_000_000, balance_b=100_000_000)
        store = InMemoryOperationStore()
        notifier = RecordingNotifier()
        engine = _engine(world, store, notifier)

        first = await engine.tick()

        assert first.outcome is TickOutcome.COMPLETED
        assert world.balances == {
            ChainSide.CHAIN_A: 450_000_000,
            ChainSide.CHAIN_B: 250_000_000,
        }
        op = await store.get(first.operation_id)
        assert op.status is OperationStatus.COMPLETED
        assert op.bridge_txhash == world.sent[0]
        assert op.amount_to_bridge == 150_000_000
        assert notifier.errors == []
        assert notifier.info[-1].startswith("Rebalance completed: 150 USDC")

        second = await engine.tick()

        assert second.outcome is TickOutcome.NO_REBALANCE
        assert len(world.sent) == 1

    async def test_resume_after_crash_does_not_resubmit(self) -> None:
        world = World(balance_a=100_000_000, balance_b=600_000_000, polls_to_settle=3)
        store = InMemoryOperationStore()

        class CrashingMonitor:
            async def wait(self, tx_hash: str, direction: Any) -> Any:
                raise asyncio.CancelledError

        crashed = _engine(world, store, RecordingNotifier(), monitor=CrashingMonitor())
        with pytest.raises(asyncio.CancelledError):
            await crashed.tick()

        in_flight = await store.find_oldest_unfinished()
        assert in_flight is not None
        assert in_flight.status is OperationStatus.IN_PROGRESS
        assert in_flight.bridge_txhash == world.sent[0]

        notifier = RecordingNotifier()
        restarted = _engine(world, store, notifier)
        result = await restarted.tick()

        assert result.resumed
        assert len(world.sent) == 1
        assert world.polls[world.sent[0]] == 3
        assert world.balances == {
            ChainSide.CHAIN_A: 250_000_000,
            ChainSide.CHAIN_B: 450_000_000,
        }
        assert (await store.get(in_flight.id)).status is OperationStatus.COMPLETED
        assert notifier.info[0].startswith(f"Resuming rebalance operation {in_flight.id}")

    async def test_crash_after_bridge_leg_is_not_resubmitted(self) -> None:
        world = World(balance_a=600_000_000, balance_b=100_000_000)
        store = InMemoryOperationStore()

        class CrashingMonitor:
            async def wait(self, tx_hash: str, direction: Any) -> Any:
                raise asyncio.CancelledError

        crashed = _engine(
            world,
            store,
            RecordingNotifier(),
            monitor=CrashingMonitor(),
            aggregator_cls=NoDirectRouteAggregator,
        )
        with pytest.raises(asyncio.CancelledError):
            await crashed.tick()

        swap_hash, bridge_hash = world.sent
        in_flight = await store.find_oldest_unfinished()
        assert in_flight is not None
        assert in_flight.status is OperationStatus.IN_PROGRESS
        assert in_flight.bridge_txhash == bridge_hash
        assert in_flight.submitted_steps == (
            f"source swap {swap_hash}",
            f"native bridge {bridge_hash}",
        )

        notifier = RecordingNotifier()
        restarted = _engine(world, store, notifier, aggregator_cls=NoDirectRouteAggregator)
        with pytest.raises(SubmissionError, match="needs manual completion"):
            await restarted.tick()

        assert len(world.sent) == 2
        final = await store.get(in_flight.id)
        assert final.status is OperationStatus.FAILED
        assert swap_hash in final.error_message
        assert bridge_hash in final.error_message
        assert "needs manual completion" in notifier.errors[0]
        assert await store.find_oldest_unfinished() is None
