"""Aggregator request/response models, validated at the HTTP boundary."""

from __future__ import annotations

import enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field


def _to_int(value: Any) -> Any:
    """Accept ints, decimal strings and 0x-prefixed hex strings."""
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    return value


BigInt = Annotated[int, BeforeValidator(_to_int)]


class QuoteRequest(BaseModel):
    """Parameters of a quote for moving ``amount`` of one token to another.

    Same-chain quotes (``from_chain_id == to_chain_id``) are swaps.
    """

    model_config = {"frozen": True}

    from_chain_id: int
    to_chain_id: int
    from_token: str
    to_token: str
    amount: int = Field(gt=0)
    sender: str
    slippage_pct: float = 1.0

    @property
    def is_swap(self) -> bool:
        return self.from_chain_id == self.to_chain_id


class Route(BaseModel):
    """One route returned by the quote endpoint.

    ``raw`` keeps the untouched payload; build-tx must receive the route
    exactly as it was quoted.
    """

    model_config = {"frozen": True, "populate_by_name": True}

    to_amount: BigInt = Field(alias="toAmount", ge=0)
    from_amount: BigInt | None = Field(default=None, alias="fromAmount")
    route_id: str | None = Field(default=None, alias="routeId")
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Route:
        route = cls.model_validate(payload)
        return route.model_copy(update={"raw": payload})


class ApprovalData(BaseModel):
    """Allowance the aggregator requires before the transfer can execute."""

    model_config = {"frozen": True, "populate_by_name": True}

    spender: str = Field(alias="allowanceTarget")
    amount: BigInt = Field(alias="minimumApprovalAmount", ge=0)
    token_address: str | None = Field(default=None, alias="approvalTokenAddress")
    owner: str | None = None


class BuildTxResult(BaseModel):
    """Ready-to-sign transaction data for a route."""

    model_config = {"frozen": True, "populate_by_name": True}

    tx_data: str = Field(alias="txData")
    tx_target: str = Field(alias="txTarget")
    value: BigInt = Field(default=0, ge=0)
    approval_data: ApprovalData | None = Field(default=None, alias="approvalData")


class LegStatus(str, enum.Enum):
    """Aggregator-reported status of one leg of a cross-chain transfer."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, value: Any) -> LegStatus:
        if isinstance(value, str):
            try:
                return cls(value.upper())
            except ValueError:
                pass
        return cls.PENDING


class TransferStatus(str, enum.Enum):
    """Combined status of a cross-chain transfer."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class BridgeStatus(BaseModel):
    """Status of both legs, as reported by the bridge-status endpoint."""

    model_config = {"frozen": True, "populate_by_name": True}

    source: Annotated[LegStatus, BeforeValidator(LegStatus.parse)] = Field(
        alias="sourceTxStatus"
    )
    destination: Annotated[LegStatus, BeforeValidator(LegStatus.parse)] = Field(
        alias="destinationTxStatus"
    )

    @property
    def overall(self) -> TransferStatus:
        """FAILED if either leg failed, COMPLETED if both did, else PENDING."""
        if LegStatus.FAILED in (self.source, self.destination):
            return TransferStatus.FAILED
        if self.source is LegStatus.COMPLETED and self.destination is LegStatus.COMPLETED:
            return TransferStatus.COMPLETED
        return TransferStatus.PENDING
