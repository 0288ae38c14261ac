"""Process-level loop driving the rebalance engine."""

from balbot.core.scheduler import RebalanceScheduler

__all__ = ["RebalanceScheduler"]
