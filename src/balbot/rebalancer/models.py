"""Data models for the rebalance decision and the outcome of a tick."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from balbot.models.chain import ChainSide, Direction, format_units


class ChainValuation(BaseModel):
    """Balance and threshold of one chain, in token units and in USD.

    Attributes:
        side: Chain this valuation belongs to.
        symbol: Token symbol on that chain.
        balance: Current balance in token units.
        threshold: Configured threshold in token units.
        price: USD price of one token.
        balance_usd: ``balance * price``.
        threshold_usd: ``threshold * price``.
    """

    model_config = {"frozen": True}

    side: ChainSide
    symbol: str
    balance: Decimal
    threshold: Decimal
    price: Decimal
    balance_usd: Decimal
    threshold_usd: Decimal

    @property
    def above_threshold(self) -> bool:
        return self.balance_usd > self.threshold_usd


def _balance_line(v: ChainValuation) -> str:
    return (
        f"{v.side.value}: {format_units(v.balance)} {v.symbol} "
        f"(${v.balance_usd:.2f}, threshold ${v.threshold_usd:.2f})"
    )


class RebalancePlan(BaseModel):
    """A decided transfer, before anything is persisted or submitted.

    Attributes:
        direction: Which chain donates.
        source_token: Token address on the source chain.
        dest_token: Token address on the destination chain.
        token_decimals: Decimals of the source token.
        amount: Amount to move, in the source token's smallest unit.
        amount_usd: USD value of ``amount`` at plan time.
        valuations: Snapshot of both chains at plan time.
    """

    model_config = {"frozen": True}

    direction: Direction
    source_token: str
    dest_token: str
    token_decimals: int
    amount: int = Field(gt=0)
    amount_usd: Decimal
    valuations: dict[ChainSide, ChainValuation]

    @property
    def source(self) -> ChainValuation:
        return self.valuations[self.direction.source]

    @property
    def destination(self) -> ChainValuation:
        return self.valuations[self.direction.destination]

    @property
    def amount_units(self) -> Decimal:
        """``amount`` in whole-token units."""
        return Decimal(self.amount).scaleb(-self.token_decimals)

    def describe(self) -> str:
        """Human-readable summary for the operator notification."""
        return "\n".join(
            [
                "Rebalance needed",
                f"Direction: {self.direction.value}",
                f"Amount: {format_units(self.amount_units)} {self.source.symbol} "
                f"(~${self.amount_usd:.2f})",
                _balance_line(self.source),
                _balance_line(self.destination),
            ]
        )


class BalanceAssessment(BaseModel):
    """Valuation of both chains and the plan derived from it, if any.

    Attributes:
        valuations: USD valuation of each chain.
        plan: Transfer to make, or None when both chains are healthy.
    """

    model_config = {"frozen": True}

    valuations: dict[ChainSide, ChainValuation]
    plan: RebalancePlan | None = None

    def describe(self) -> str:
        if self.plan is not None:
            return self.plan.describe()
        lines = ["No rebalance needed"]
        lines.extend(_balance_line(self.valuations[side]) for side in ChainSide)
        return "\n".join(lines)


class TickOutcome(Enum):
    """How a single engine tick ended without raising."""

    SKIPPED = "skipped"
    NO_REBALANCE = "no_rebalance"
    COMPLETED = "completed"


class TickResult(BaseModel):
    """Result of :meth:`RebalanceEngine.tick`.

    Attributes:
        outcome: How the tick ended.
        operation_id: Operation driven to completion in this tick, if any.
        resumed: True if the operation was left over from an earlier run.
        plan: Plan created in this tick, if any.
    """

    model_config = {"frozen": True}

    outcome: TickOutcome
    operation_id: str | None = None
    resumed: bool = False
    plan: RebalancePlan | None = None
