"""Operation store protocol and an in-process implementation."""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

from balbot.errors import PersistenceError
from balbot.models.operation import OperationStatus, RebalanceOperation


@runtime_checkable
class OperationStore(Protocol):
    """Persistence for rebalance operations.

    At most one operation may be unfinished (PENDING or IN_PROGRESS) at a
    time; ``insert`` refuses a second one. Rows are never deleted.
    """

    async def insert(self, operation: RebalanceOperation) -> RebalanceOperation:
        ...

    async def find_oldest_unfinished(self) -> RebalanceOperation | None:
        ...

    async def get(self, operation_id: str) -> RebalanceOperation | None:
        ...

    async def latest(self) -> RebalanceOperation | None:
        ...

    async def update_status(
        self,
        operation_id: str,
        status: OperationStatus,
        *,
        bridge_txhash: str | None = None,
        error_message: str | None = None,
        submitted_step: str | None = None,
    ) -> RebalanceOperation:
        """Apply a validated transition and return the updated row.

        ``submitted_step`` is appended to the row's step log.

        Raises:
            PersistenceError: Unknown id, illegal transition, or backend failure.
        """
        ...


class InMemoryOperationStore:
    """Keeps operations in a dict. State is lost when the process exits."""

    def __init__(self) -> None:
        self._rows: dict[str, RebalanceOperation] = {}
        self._lock = asyncio.Lock()

    async def insert(self, operation: RebalanceOperation) -> RebalanceOperation:
        async with self._lock:
            if operation.id in self._rows:
                raise PersistenceError(f"Operation {operation.id} already exists")
            unfinished = self._oldest_unfinished()
            if unfinished is not None:
                raise PersistenceError(
                    f"Operation {unfinished.id} is still {unfinished.status.value}"
                )
            self._rows[operation.id] = operation
            return operation

    async def find_oldest_unfinished(self) -> RebalanceOperation | None:
        return self._oldest_unfinished()

    async def get(self, operation_id: str) -> RebalanceOperation | None:
        return self._rows.get(operation_id)

    async def latest(self) -> RebalanceOperation | None:
        if not self._rows:
            return None
        return max(self._rows.values(), key=lambda op: op.created_at)

    async def update_status(
        self,
        operation_id: str,
        status: OperationStatus,
        *,
        bridge_txhash: str | None = None,
        error_message: str | None = None,
        submitted_step: str | None = None,
    ) -> RebalanceOperation:
        async with self._lock:
            current = self._rows.get(operation_id)
            if current is None:
                raise PersistenceError(f"Operation {operation_id} not found")
            updated = current.transition(
                status,
                bridge_txhash=bridge_txhash,
                error_message=error_message,
                submitted_step=submitted_step,
            )
            self._rows[operation_id] = updated
            return updated

    def _oldest_unfinished(self) -> RebalanceOperation | None:
        unfinished = [op for op in self._rows.values() if op.is_unfinished]
        if not unfinished:
            return None
        return min(unfinished, key=lambda op: op.created_at)
