"""EVM chain client: balance/allowance reads and signed transaction submission.

One ``ChainClient`` wraps one chain's ``AsyncWeb3`` instance plus the signing
account shared by both chains.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3

from balbot.errors import ApprovalError, ChainReadError, SubmissionError
from balbot.logging import get_logger
from balbot.models.chain import NATIVE_DECIMALS, ChainSide, is_native_token
from balbot.utils.retry import Sleep, retry_async

MAX_UINT256 = 2**256 - 1

ERC20_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "approve",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "allowance",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "decimals",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
    },
]


@dataclass
class TxRequest:
    """Unsigned transaction as returned by the aggregator's build-tx call.

    Attributes:
        to: Target contract address.
        data: Hex-encoded calldata.
        value: Native value to send, in wei.
        gas_limit: Gas limit; estimated at submission when None.
    """

    to: str
    data: str = "0x"
    value: int = 0
    gas_limit: int | None = None


class ChainClient:
    """Reads and writes against a single EVM chain.

    Args:
        side: Which tracked chain this client serves.
        name: Chain name for logs and messages.
        chain_id: EVM chain id.
        w3: Connected ``AsyncWeb3`` instance.
        wallet_address: Wallet whose balances are tracked on this chain.
        account: Signing account; read-only client when None.
        native_token_address: Address the aggregator uses for the native asset.
        receipt_timeout: Seconds to wait for a single receipt lookup.
        receipt_attempts: Attempts for the (idempotent) receipt wait.
        receipt_retry_delay: Seconds between receipt wait attempts.
        sleep: Sleep function, injectable for tests.
    """

    def __init__(
        self,
        side: ChainSide,
        name: str,
        chain_id: int,
        w3: AsyncWeb3,
        wallet_address: str,
        account: LocalAccount | None = None,
        native_token_address: str = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE",
        receipt_timeout: float = 300.0,
        receipt_attempts: int = 3,
        receipt_retry_delay: float = 5.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.side = side
        self.name = name
        self.chain_id = chain_id
        self.wallet_address = Web3.to_checksum_address(wallet_address)
        self.native_token_address = native_token_address
        self._w3 = w3
        self._account = account
        self._receipt_timeout = receipt_timeout
        self._receipt_attempts = receipt_attempts
        self._receipt_retry_delay = receipt_retry_delay
        self._sleep = sleep
        self._logger = get_logger(f"chain.{name}")

    @classmethod
    def from_rpc(
        cls,
        side: ChainSide,
        name: str,
        chain_id: int,
        rpc_url: str,
        wallet_address: str,
        private_key: str | None = None,
        **kwargs: Any,
    ) -> ChainClient:
        """Build a client over an HTTP RPC endpoint."""
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        account = Account.from_key(private_key) if private_key else None
        return cls(
            side=side,
            name=name,
            chain_id=chain_id,
            w3=w3,
            wallet_address=wallet_address,
            account=account,
            **kwargs,
        )

    @property
    def sender(self) -> str:
        """Address that signs transactions on this chain."""
        if self._account is None:
            raise SubmissionError(f"No signing account configured for {self.name}")
        return self._account.address

    def _erc20(self, token_address: str) -> Any:
        return self._w3.eth.contract(
            address=Web3.to_checksum_address(token_address), abi=ERC20_ABI
        )

    # --- Reads ---

    async def get_balance(self, token_address: str, wallet_address: str) -> int:
        """Return the balance of ``wallet_address`` in the token's smallest unit.

        Raises:
            ChainReadError: On RPC failure or a non-integer response.
        """
        wallet = Web3.to_checksum_address(wallet_address)
        try:
            if is_native_token(token_address):
                balance = await self._w3.eth.get_balance(wallet)
            else:
                balance = await self._erc20(token_address).functions.balanceOf(wallet).call()
        except Exception as e:
            raise ChainReadError(
                f"Balance read failed on {self.name} for {token_address}: {e}"
            ) from e

        if not isinstance(balance, int) or isinstance(balance, bool) or balance < 0:
            raise ChainReadError(
                f"Malformed balance from {self.name} for {token_address}: {balance!r}"
            )
        return balance

    async def get_decimals(self, token_address: str) -> int:
        """Return the token's decimals (18 for the native asset)."""
        if is_native_token(token_address):
            return NATIVE_DECIMALS
        try:
            return int(await self._erc20(token_address).functions.decimals().call())
        except Exception as e:
            raise ChainReadError(
                f"Decimals read failed on {self.name} for {token_address}: {e}"
            ) from e

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        """Return the ERC-20 allowance; the native asset needs none."""
        if is_native_token(token_address):
            return MAX_UINT256
        try:
            allowance = await (
                self._erc20(token_address)
                .functions.allowance(
                    Web3.to_checksum_address(owner),
                    Web3.to_checksum_address(spender),
                )
                .call()
            )
        except Exception as e:
            raise ChainReadError(
                f"Allowance read failed on {self.name} for {token_address}: {e}"
            ) from e
        return int(allowance)

    # --- Writes ---

    async def approve(self, token_address: str, spender: str, amount: int) -> str:
        """Submit an ERC-20 approve and return its tx hash.

        Raises:
            ApprovalError: For the native asset or on any build/send failure.
        """
        if is_native_token(token_address):
            raise ApprovalError("Cannot approve the native asset")
        try:
            sender = self.sender
            tx = await (
                self._erc20(token_address)
                .functions.approve(Web3.to_checksum_address(spender), amount)
                .build_transaction(
                    {
                        "from": sender,
                        "chainId": self.chain_id,
                        "nonce": await self._w3.eth.get_transaction_count(sender, "pending"),
                        "gasPrice": await self._w3.eth.gas_price,
                    }
                )
            )
            tx_hash = await self._sign_and_send(tx)
        except ApprovalError:
            raise
        except Exception as e:
            raise ApprovalError(
                f"Approve of {token_address} for {spender} failed on {self.name}: {e}"
            ) from e

        self._logger.info(
            "approval_submitted",
            token=token_address,
            spender=spender,
            amount=str(amount),
            tx_hash=tx_hash,
        )
        return tx_hash

    async def estimate_gas(self, tx: TxRequest) -> int:
        """Estimate gas for ``tx``.

        Raises:
            SubmissionError: With the RPC's reason kept in the message.
        """
        try:
            estimate = await self._w3.eth.estimate_gas(
                {
                    "from": self.sender,
                    "to": Web3.to_checksum_address(tx.to),
                    "data": tx.data,
                    "value": tx.value,
                }
            )
        except SubmissionError:
            raise
        except Exception as e:
            raise SubmissionError(f"Gas estimation failed on {self.name}: {e}") from e
        self._logger.debug("gas_estimated", to=tx.to, estimate=estimate)
        return int(estimate)

    async def send_transaction(self, tx: TxRequest) -> str:
        """Sign and broadcast ``tx``; returns the hash without waiting.

        Raises:
            SubmissionError: On any signing or broadcast failure.
        """
        try:
            sender = self.sender
            gas_limit = tx.gas_limit
            if gas_limit is None:
                gas_limit = await self.estimate_gas(tx)
            payload = {
                "from": sender,
                "to": Web3.to_checksum_address(tx.to),
                "data": tx.data,
                "value": tx.value,
                "gas": gas_limit,
                "chainId": self.chain_id,
                "nonce": await self._w3.eth.get_transaction_count(sender, "pending"),
                "gasPrice": await self._w3.eth.gas_price,
            }
            tx_hash = await self._sign_and_send(payload)
        except SubmissionError:
            raise
        except Exception as e:
            raise SubmissionError(f"Send failed on {self.name}: {e}") from e

        self._logger.info(
            "transaction_submitted",
            to=tx.to,
            value=str(tx.value),
            gas_limit=gas_limit,
            tx_hash=tx_hash,
        )
        return tx_hash

    async def _sign_and_send(self, tx: dict[str, Any]) -> str:
        if self._account is None:
            raise SubmissionError(f"No signing account configured for {self.name}")
        signed = self._account.sign_transaction(tx)
        raw_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(raw_hash)

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> bool:
        """Block until ``tx_hash`` is mined with ``confirmations`` blocks.

        The receipt lookup is retried; it is a read and safe to repeat.

        Returns:
            True if the transaction succeeded, False if it reverted.

        Raises:
            ChainReadError: If the receipt never becomes available.
        """

        async def _fetch() -> Any:
            return await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )

        try:
            receipt = await retry_async(
                _fetch,
                attempts=self._receipt_attempts,
                delay=self._receipt_retry_delay,
                sleep=self._sleep,
                label=f"receipt:{self.name}",
            )
            while confirmations > 1:
                head = await self._w3.eth.block_number
                if head - receipt["blockNumber"] + 1 >= confirmations:
                    break
                await self._sleep(self._receipt_retry_delay)
        except Exception as e:
            raise ChainReadError(
                f"Receipt for {tx_hash} unavailable on {self.name}: {e}"
            ) from e

        succeeded = receipt["status"] == 1
        self._logger.info(
            "transaction_confirmed",
            tx_hash=tx_hash,
            success=succeeded,
            block=receipt["blockNumber"],
        )
        return succeeded
