"""EVM chain access (web3)."""

from balbot.chain.client import ERC20_ABI, MAX_UINT256, ChainClient, TxRequest
from balbot.chain.reader import BalanceReader

__all__ = ["ERC20_ABI", "MAX_UINT256", "BalanceReader", "ChainClient", "TxRequest"]
