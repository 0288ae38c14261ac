"""Persisted rebalance operation and its state machine."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from balbot.errors import PersistenceError
from balbot.models.chain import Direction


class OperationStatus(str, enum.Enum):
    """Lifecycle status of a rebalance operation."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED)

    def can_transition_to(self, target: OperationStatus) -> bool:
        return target in _TRANSITIONS[self]


UNFINISHED_STATUSES = (OperationStatus.PENDING, OperationStatus.IN_PROGRESS)

# IN_PROGRESS -> IN_PROGRESS records submitted steps and the bridge tx hash.
# PENDING -> FAILED covers a failure before the IN_PROGRESS write landed.
_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset(
        {OperationStatus.IN_PROGRESS, OperationStatus.FAILED}
    ),
    OperationStatus.IN_PROGRESS: frozenset(
        {
            OperationStatus.IN_PROGRESS,
            OperationStatus.COMPLETED,
            OperationStatus.FAILED,
        }
    ),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.FAILED: frozenset(),
}


class RebalanceOperation(BaseModel):
    """One transfer attempt, as persisted by the operation store.

    Only ``status``, ``bridge_txhash``, ``error_message``, ``completed_at``
    and the append-only ``submitted_steps`` log change after creation, and
    only through :meth:`transition`.

    Attributes:
        id: Unique identifier (UUID4), never reused.
        direction: Which chain donates.
        token_address: Token moved, on the source chain.
        token_decimals: Decimals of that token.
        amount_to_bridge: Amount in the token's smallest unit.
        status: Current lifecycle status.
        bridge_txhash: Hash of the submitted bridge transaction, once known.
        error_message: Failure cause, only when FAILED.
        source_chain_balance: Source balance (token units) at plan time.
        dest_chain_balance: Destination balance (token units) at plan time.
        created_at: Creation time (UTC).
        completed_at: Time a terminal status was reached.
        submitted_steps: ``"<step> <tx hash>"`` for every fund-moving
            transaction sent so far, in order.
    """

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    direction: Direction
    token_address: str
    token_decimals: int
    amount_to_bridge: int = Field(gt=0)
    status: OperationStatus = OperationStatus.PENDING
    bridge_txhash: str | None = None
    error_message: str | None = None
    source_chain_balance: str | None = None
    dest_chain_balance: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    submitted_steps: tuple[str, ...] = ()

    @property
    def is_unfinished(self) -> bool:
        return self.status in UNFINISHED_STATUSES

    @property
    def amount_units(self) -> Decimal:
        """``amount_to_bridge`` in whole-token units."""
        return Decimal(self.amount_to_bridge).scaleb(-self.token_decimals)

    def transition(
        self,
        status: OperationStatus,
        *,
        bridge_txhash: str | None = None,
        error_message: str | None = None,
        submitted_step: str | None = None,
        now: datetime | None = None,
    ) -> RebalanceOperation:
        """Return a copy moved to ``status``.

        Raises:
            PersistenceError: If the transition is not allowed, the tx hash
                would be overwritten, an error message is given for a
                non-FAILED status, or a step is recorded outside IN_PROGRESS.
        """
        if not self.status.can_transition_to(status):
            raise PersistenceError(
                f"Operation {self.id}: illegal transition "
                f"{self.status.value} -> {status.value}"
            )
        if (
            bridge_txhash is not None
            and self.bridge_txhash is not None
            and bridge_txhash.lower() != self.bridge_txhash.lower()
        ):
            raise PersistenceError(
                f"Operation {self.id}: bridge tx hash already set to "
                f"{self.bridge_txhash}"
            )
        if error_message is not None and status is not OperationStatus.FAILED:
            raise PersistenceError(
                f"Operation {self.id}: error message only allowed on FAILED"
            )
        if submitted_step is not None and status is not OperationStatus.IN_PROGRESS:
            raise PersistenceError(
                f"Operation {self.id}: steps are only recorded while IN_PROGRESS"
            )

        update: dict[str, object] = {"status": status}
        if submitted_step is not None:
            update["submitted_steps"] = (*self.submitted_steps, submitted_step)
        if bridge_txhash is not None:
            update["bridge_txhash"] = bridge_txhash
        if error_message is not None:
            update["error_message"] = error_message
        if status.is_terminal:
            update["completed_at"] = now or datetime.now(UTC)
        return self.model_copy(update=update)
