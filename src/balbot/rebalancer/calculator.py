"""USD-normalized imbalance calculation.

Both chains' balances and thresholds are converted to USD. When every chain
sits strictly above its threshold nothing happens. Otherwise half of the
combined surplus over the thresholds is moved out of the donor chain, which
is the chain with the larger USD threshold.
"""

from __future__ import annotations

import asyncio
import math
from decimal import ROUND_FLOOR, Decimal

from balbot.errors import PriceUnavailableError
from balbot.logging import get_logger
from balbot.models.chain import ChainBalance, ChainSide, Direction, TrackedAsset
from balbot.pricing.oracle import PriceOracle
from balbot.rebalancer.models import BalanceAssessment, ChainValuation, RebalancePlan

logger = get_logger("rebalancer.calculator")


def value_chain(
    asset: TrackedAsset, balance: Decimal, price: Decimal
) -> ChainValuation:
    """Express one chain's balance and threshold in USD."""
    return ChainValuation(
        side=asset.side,
        symbol=asset.token_symbol,
        balance=balance,
        threshold=asset.threshold,
        price=price,
        balance_usd=balance * price,
        threshold_usd=asset.threshold * price,
    )


def select_donor(valuations: dict[ChainSide, ChainValuation]) -> ChainSide:
    """Pick the chain funds move out of.

    The larger USD threshold donates. Equal thresholds fall back to the
    larger USD balance, then to CHAIN_A.
    """
    a = valuations[ChainSide.CHAIN_A]
    b = valuations[ChainSide.CHAIN_B]
    if a.threshold_usd != b.threshold_usd:
        return ChainSide.CHAIN_A if a.threshold_usd > b.threshold_usd else ChainSide.CHAIN_B
    if b.balance_usd > a.balance_usd:
        return ChainSide.CHAIN_B
    return ChainSide.CHAIN_A


def compute_plan(
    valuations: dict[ChainSide, ChainValuation],
    assets: dict[ChainSide, TrackedAsset],
) -> RebalancePlan | None:
    """Decide whether and how much to move.

    Args:
        valuations: USD valuation of each chain.
        assets: Tracked asset of each chain.

    Returns:
        A plan, or None if no chain is at or below its threshold or the
        resulting amount rounds to nothing.
    """
    if all(v.above_threshold for v in valuations.values()):
        return None

    total_balance = sum((v.balance_usd for v in valuations.values()), Decimal(0))
    total_threshold = sum((v.threshold_usd for v in valuations.values()), Decimal(0))
    amount_usd = (total_balance - total_threshold) / 2
    if not amount_usd.is_finite() or amount_usd <= 0:
        logger.info(
            "rebalance_not_possible",
            total_balance_usd=str(total_balance),
            total_threshold_usd=str(total_threshold),
        )
        return None

    donor = select_donor(valuations)
    source = assets[donor]
    price = valuations[donor].price
    amount = int(
        (amount_usd.scaleb(source.token_decimals) / price).to_integral_value(
            rounding=ROUND_FLOOR
        )
    )
    if amount <= 0:
        return None

    return RebalancePlan(
        direction=Direction.from_source(donor),
        source_token=source.token_address,
        dest_token=assets[donor.other].token_address,
        token_decimals=source.token_decimals,
        amount=amount,
        amount_usd=amount_usd,
        valuations=valuations,
    )


class ImbalanceCalculator:
    """Prices both chains' balances and produces a rebalance plan.

    Args:
        oracle: USD price source.
    """

    def __init__(self, oracle: PriceOracle) -> None:
        self._oracle = oracle

    async def valuate(
        self,
        balances: dict[ChainSide, ChainBalance],
        assets: dict[ChainSide, TrackedAsset],
    ) -> dict[ChainSide, ChainValuation]:
        """Return the USD valuation of each chain.

        Raises:
            PriceUnavailableError: If any price is zero, negative or not finite.
        """
        sides = list(ChainSide)
        prices = await asyncio.gather(
            *(self._oracle.get_price(assets[side].token_address) for side in sides)
        )
        valuations: dict[ChainSide, ChainValuation] = {}
        for side, price in zip(sides, prices):
            asset = assets[side]
            if not math.isfinite(price) or price <= 0:
                raise PriceUnavailableError(
                    f"No USD price for {asset.token_symbol} ({asset.token_address}) "
                    f"on {asset.chain_name}"
                )
            valuations[side] = value_chain(
                asset, balances[side].amount, Decimal(str(price))
            )
        return valuations

    async def calculate(
        self,
        balances: dict[ChainSide, ChainBalance],
        assets: dict[ChainSide, TrackedAsset],
    ) -> BalanceAssessment:
        """Price the balances and decide whether to move funds.

        Raises:
            PriceUnavailableError: If either chain has no usable price.
        """
        valuations = await self.valuate(balances, assets)
        plan = compute_plan(valuations, assets)
        if plan is None:
            logger.info(
                "no_rebalance_needed",
                **{
                    f"{side.value}_usd": f"{v.balance_usd:.2f}"
                    for side, v in valuations.items()
                },
            )
        else:
            logger.info(
                "rebalance_planned",
                direction=plan.direction.value,
                amount=str(plan.amount),
                amount_usd=f"{plan.amount_usd:.2f}",
            )
        return BalanceAssessment(valuations=valuations, plan=plan)
