"""Prometheus metrics for balbot."""

from __future__ import annotations

from balbot.monitoring.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
