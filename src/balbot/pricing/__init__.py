"""USD price lookup."""

from balbot.pricing.coinmarketcap import CoinMarketCapOracle
from balbot.pricing.oracle import OverridingPriceOracle, PriceOracle, StaticPriceOracle

__all__ = [
    "CoinMarketCapOracle",
    "OverridingPriceOracle",
    "PriceOracle",
    "StaticPriceOracle",
]
