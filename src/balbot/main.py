"""balbot entry point.

Assembles all components (chain clients, aggregator, price oracle, store,
engine, scheduler, notifiers) from configuration and runs the rebalancer
with graceful shutdown support.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from balbot import __version__
from balbot.alerts.log_notifier import LogNotifier
from balbot.alerts.notifier_protocol import Notifier
from balbot.alerts.telegram import TelegramNotifier
from balbot.alerts.telegram_bot import TelegramBotService
from balbot.bridge.aggregator import AggregatorClient
from balbot.bridge.monitor import TransactionMonitor
from balbot.bridge.orchestrator import BridgeOrchestrator
from balbot.chain.client import ChainClient
from balbot.chain.reader import BalanceReader
from balbot.config import AppConfig, StoreBackend, load_config
from balbot.core.scheduler import RebalanceScheduler
from balbot.errors import BalbotError, ConfigError
from balbot.logging import get_logger, setup_logging
from balbot.models.chain import ChainSide
from balbot.monitoring.metrics import MetricsCollector
from balbot.pricing.coinmarketcap import CoinMarketCapOracle
from balbot.pricing.oracle import OverridingPriceOracle, PriceOracle
from balbot.rebalancer.calculator import ImbalanceCalculator
from balbot.rebalancer.engine import RebalanceEngine
from balbot.storage.operation_store import InMemoryOperationStore, OperationStore
from balbot.storage.postgres import PostgresOperationStore


def _build_notifier(config: AppConfig) -> Notifier:
    """Telegram when configured, otherwise log-only."""
    telegram_cfg = config.alerts.telegram
    if telegram_cfg.enabled:
        get_logger("main").info("telegram_notifier_enabled")
        return TelegramNotifier(bot_token=telegram_cfg.bot_token, chat_id=telegram_cfg.chat_id)
    return LogNotifier()


def _build_chain_clients(config: AppConfig) -> dict[ChainSide, ChainClient]:
    """Create one web3 client per tracked chain, sharing the signing key."""
    if not config.private_key:
        raise ConfigError("private_key is not set (BALBOT_PRIVATE_KEY)")

    clients: dict[ChainSide, ChainClient] = {}
    for side in ChainSide:
        chain = config.chains.for_side(side)
        clients[side] = ChainClient.from_rpc(
            side=side,
            name=chain.name,
            chain_id=chain.chain_id,
            rpc_url=chain.rpc_url,
            wallet_address=chain.wallet_address,
            private_key=config.private_key,
            native_token_address=chain.native_token_address,
            receipt_timeout=config.engine.receipt_timeout_seconds,
        )
    return clients


async def _build_store(config: AppConfig) -> OperationStore:
    if config.database.backend is StoreBackend.MEMORY:
        get_logger("main").warning(
            "memory_store_in_use",
            msg="Operations are not persisted; an interrupted run cannot resume",
        )
        return InMemoryOperationStore()

    pg = config.database.postgres
    return await PostgresOperationStore.connect(
        pg.dsn, min_size=pg.min_pool_size, max_size=pg.max_pool_size
    )


def build_engine(
    config: AppConfig,
    store: OperationStore,
    clients: dict[ChainSide, ChainClient],
    aggregator: AggregatorClient,
    oracle: PriceOracle,
    notifier: Notifier,
    metrics: MetricsCollector | None = None,
) -> RebalanceEngine:
    """Wire the engine from already-constructed collaborators.

    Args:
        config: Validated application configuration.
        store: Operation store.
        clients: Chain client per side.
        aggregator: Bridge aggregator client.
        oracle: USD price oracle.
        notifier: Operator notifier.
        metrics: Optional Prometheus collector.

    Returns:
        Ready-to-tick RebalanceEngine.
    """
    assets = config.chains.assets()
    monitor = TransactionMonitor(
        aggregator,
        chain_ids={side: clients[side].chain_id for side in ChainSide},
        policy=config.monitor.to_policy(),
    )
    orchestrator = BridgeOrchestrator(
        aggregator,
        clients,
        monitor=monitor,
        gas_buffer_pct=config.engine.gas_buffer_pct,
        bridge_slippage_pct=config.aggregator.bridge_slippage_pct,
        swap_slippage_pct=config.aggregator.swap_slippage_pct,
        confirmations=config.engine.confirmations,
    )
    return RebalanceEngine(
        store=store,
        reader=BalanceReader(clients, assets),
        calculator=ImbalanceCalculator(oracle),
        orchestrator=orchestrator,
        monitor=monitor,
        notifier=notifier,
        assets=assets,
        min_gas_balance=config.engine.min_gas_balance,
        metrics=metrics,
    )


async def run(config: AppConfig, once: bool = False) -> int:
    """Run the rebalancer until interrupted (or for a single tick).

    Args:
        config: Validated application configuration.
        once: Run one tick and exit instead of looping.

    Returns:
        Process exit code.
    """
    logger = get_logger("main")
    logger.info(
        "balbot_starting",
        version=__version__,
        chain_a=config.chains.chain_a.name,
        chain_b=config.chains.chain_b.name,
    )

    notifier = _build_notifier(config)
    clients = _build_chain_clients(config)
    aggregator = AggregatorClient(
        api_key=config.aggregator.api_key,
        base_url=config.aggregator.base_url,
        timeout_seconds=config.aggregator.timeout_seconds,
    )
    cmc = CoinMarketCapOracle(
        api_key=config.pricing.coinmarketcap_api_key,
        notifier=notifier,
        base_url=config.pricing.coinmarketcap_base_url,
        timeout_seconds=config.pricing.timeout_seconds,
    )
    oracle: PriceOracle = cmc
    if config.pricing.price_overrides:
        oracle = OverridingPriceOracle(config.pricing.price_overrides, cmc)

    metrics: MetricsCollector | None = None
    if config.metrics.enabled:
        metrics = MetricsCollector()
        metrics.set_system_info(
            __version__, config.chains.chain_a.name, config.chains.chain_b.name
        )
        metrics.start_server(config.metrics.port)
        logger.info("metrics_server_started", port=config.metrics.port)

    store: OperationStore | None = None
    try:
        store = await _build_store(config)
        engine = build_engine(config, store, clients, aggregator, oracle, notifier, metrics)

        if once:
            try:
                result = await engine.tick()
            except BalbotError as e:
                logger.error("tick_failed", error=str(e))
                return 1
            logger.info("tick_finished", outcome=result.outcome.value)
            return 0

        scheduler = RebalanceScheduler(
            engine,
            poll_interval_seconds=config.engine.poll_interval_seconds,
            error_retry_seconds=config.engine.error_retry_seconds,
        )

        bot: TelegramBotService | None = None
        telegram_cfg = config.alerts.telegram
        if telegram_cfg.enabled and telegram_cfg.commands_enabled:
            bot = TelegramBotService(
                bot_token=telegram_cfg.bot_token,
                chat_id=telegram_cfg.chat_id,
                engine=engine,
            )

        # Setup shutdown event
        shutdown_event = asyncio.Event()

        def _signal_handler() -> None:
            logger.info("shutdown_signal_received")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        await notifier.send_info(
            f"balbot {__version__} started: "
            f"{config.chains.chain_a.name} <-> {config.chains.chain_b.name}"
        )
        if bot is not None:
            await bot.start()
        await scheduler.start()

        try:
            await shutdown_event.wait()
        finally:
            logger.info("balbot_shutting_down")
            await scheduler.stop()
            if bot is not None:
                await bot.stop()
            await notifier.send_info("balbot stopped")
        return 0
    finally:
        await aggregator.close()
        await cmc.close()
        if isinstance(store, PostgresOperationStore):
            await store.close()
        logger.info("balbot_stopped")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list (defaults to sys.argv[1:]).

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="balbot - keeps a token balanced across two EVM chains",
    )
    parser.add_argument(
        "--config-dir",
        default="configs",
        help="Path to configuration directory (default: configs)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single rebalance tick and exit",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(config_dir=args.config_dir)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(log_level=config.system.log_level, json_format=config.system.json_logs)

    try:
        exit_code = asyncio.run(run(config, once=args.once))
    except ConfigError as e:
        get_logger("main").error("configuration_error", error=str(e))
        exit_code = 2
    except BalbotError as e:
        get_logger("main").error("startup_failed", error=str(e), error_type=type(e).__name__)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
