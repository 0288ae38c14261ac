"""Prometheus metrics for the balance rebalancer."""

from __future__ import annotations

import time

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)


class MetricsCollector:
    """Prometheus metrics for ticks, operations and balances.

    Uses its own CollectorRegistry so several instances (tests, tools) can
    coexist in one process.

    Attributes:
        registry: The Prometheus CollectorRegistry used for all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        # --- Counters ---
        self.ticks_total = Counter(
            "balbot_ticks_total",
            "Engine ticks by outcome",
            ["outcome"],
            registry=self._registry,
        )
        self.operations_total = Counter(
            "balbot_operations_total",
            "Rebalance operations by final status",
            ["status", "direction"],
            registry=self._registry,
        )

        # --- Gauges ---
        self.balance_usd = Gauge(
            "balbot_balance_usd",
            "Tracked token balance in USD per chain",
            ["chain"],
            registry=self._registry,
        )
        self.threshold_usd = Gauge(
            "balbot_threshold_usd",
            "Configured threshold in USD per chain",
            ["chain"],
            registry=self._registry,
        )
        self.native_balance = Gauge(
            "balbot_native_balance",
            "Native gas balance per chain",
            ["chain"],
            registry=self._registry,
        )
        self.last_tick_timestamp = Gauge(
            "balbot_last_tick_timestamp_seconds",
            "Unix time the last tick finished",
            registry=self._registry,
        )
        self.busy = Gauge(
            "balbot_engine_busy",
            "Whether a tick is running (0 or 1)",
            registry=self._registry,
        )

        # --- Histograms ---
        self.bridge_duration = Histogram(
            "balbot_bridge_duration_seconds",
            "Time from submission to confirmed cross-chain completion",
            buckets=[30, 60, 120, 300, 600, 900, 1800],
            registry=self._registry,
        )

        # --- Info ---
        self.system_info = Info(
            "balbot_system",
            "balbot system information",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Return the collector registry."""
        return self._registry

    def record_tick(self, outcome: str) -> None:
        """Count a finished tick.

        Args:
            outcome: "completed", "no_rebalance", "skipped" or "error".
        """
        self.ticks_total.labels(outcome=outcome).inc()
        self.last_tick_timestamp.set(time.time())

    def record_operation(self, status: str, direction: str) -> None:
        """Count an operation reaching a terminal status."""
        self.operations_total.labels(status=status, direction=direction).inc()

    def update_balance(
        self, chain: str, balance_usd: float, threshold_usd: float
    ) -> None:
        """Update the USD balance and threshold for a chain."""
        self.balance_usd.labels(chain=chain).set(balance_usd)
        self.threshold_usd.labels(chain=chain).set(threshold_usd)

    def update_native_balance(self, chain: str, amount: float) -> None:
        self.native_balance.labels(chain=chain).set(amount)

    def set_busy(self, busy: bool) -> None:
        self.busy.set(1.0 if busy else 0.0)

    def observe_bridge_duration(self, seconds: float) -> None:
        self.bridge_duration.observe(seconds)

    def set_system_info(self, version: str, chain_a: str, chain_b: str) -> None:
        """Set system information labels.

        Args:
            version: Application version string.
            chain_a: Name of the first chain.
            chain_b: Name of the second chain.
        """
        self.system_info.info(
            {"version": version, "chain_a": chain_a, "chain_b": chain_b}
        )

    def start_server(self, port: int = 9090) -> None:
        """Start HTTP metrics server for Prometheus scraping.

        Args:
            port: Port number to listen on.
        """
        start_http_server(port, registry=self._registry)
