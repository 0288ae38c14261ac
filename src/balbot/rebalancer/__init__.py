"""Cross-chain balance rebalancing: imbalance calculation and the tick engine."""

from balbot.rebalancer.calculator import (
    ImbalanceCalculator,
    compute_plan,
    select_donor,
    value_chain,
)
from balbot.rebalancer.engine import RebalanceEngine
from balbot.rebalancer.models import (
    BalanceAssessment,
    ChainValuation,
    RebalancePlan,
    TickOutcome,
    TickResult,
)

__all__ = [
    "BalanceAssessment",
    "ChainValuation",
    "ImbalanceCalculator",
    "RebalanceEngine",
    "RebalancePlan",
    "TickOutcome",
    "TickResult",
    "compute_plan",
    "select_donor",
    "value_chain",
]
