"""PostgreSQL-backed operation store (asyncpg).

Schema lives in ``scripts/sql/postgres_schema.sql``. A partial unique index
allows only one unfinished row; ``insert`` additionally serializes on an
advisory lock so it can report the conflict as a ``PersistenceError``.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import asyncpg

from balbot.errors import PersistenceError
from balbot.logging import get_logger
from balbot.models.chain import Direction
from balbot.models.operation import (
    UNFINISHED_STATUSES,
    OperationStatus,
    RebalanceOperation,
)

# Arbitrary key for pg_advisory_xact_lock, shared by every balbot process.
_INSERT_LOCK_KEY = 0x62616C626F74

_COLUMNS = (
    "id, direction, token_address, token_decimals, amount_to_bridge, status, "
    "bridge_txhash, error_message, source_chain_balance, dest_chain_balance, "
    "created_at, completed_at, submitted_steps"
)

_UNFINISHED = [s.value for s in UNFINISHED_STATUSES]

_BACKEND_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _parse_id(operation_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(operation_id)
    except ValueError as e:
        raise PersistenceError(f"Invalid operation id {operation_id!r}") from e


def _row_to_operation(row: Mapping[str, Any]) -> RebalanceOperation:
    return RebalanceOperation(
        id=str(row["id"]),
        direction=Direction(row["direction"]),
        token_address=row["token_address"],
        token_decimals=row["token_decimals"],
        amount_to_bridge=int(row["amount_to_bridge"]),
        status=OperationStatus(row["status"]),
        bridge_txhash=row["bridge_txhash"],
        error_message=row["error_message"],
        source_chain_balance=row["source_chain_balance"],
        dest_chain_balance=row["dest_chain_balance"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
        submitted_steps=tuple(row["submitted_steps"] or ()),
    )


class PostgresOperationStore:
    """Operation store over an asyncpg connection pool.

    Args:
        pool: Connected asyncpg pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._logger = get_logger("storage.postgres")

    @classmethod
    async def connect(
        cls, dsn: str, min_size: int = 1, max_size: int = 5
    ) -> PostgresOperationStore:
        """Create a pool for ``dsn`` and wrap it."""
        try:
            pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        except _BACKEND_ERRORS as e:
            raise PersistenceError(f"Could not connect to PostgreSQL: {e}") from e
        return cls(pool)

    async def close(self) -> None:
        await self._pool.close()

    async def insert(self, operation: RebalanceOperation) -> RebalanceOperation:
        try:
            async with self._pool.acquire() as conn, conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", _INSERT_LOCK_KEY)
                existing = await conn.fetchrow(
                    "SELECT id, status FROM rebalance_operations "
                    "WHERE status = ANY($1::text[]) LIMIT 1",
                    _UNFINISHED,
                )
                if existing is not None:
                    raise PersistenceError(
                        f"Operation {existing['id']} is still {existing['status']}"
                    )
                await conn.execute(
                    f"INSERT INTO rebalance_operations ({_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                    _parse_id(operation.id),
                    operation.direction.value,
                    operation.token_address,
                    operation.token_decimals,
                    Decimal(operation.amount_to_bridge),
                    operation.status.value,
                    operation.bridge_txhash,
                    operation.error_message,
                    operation.source_chain_balance,
                    operation.dest_chain_balance,
                    operation.created_at,
                    operation.completed_at,
                    list(operation.submitted_steps),
                )
        except _BACKEND_ERRORS as e:
            raise PersistenceError(f"Insert of operation {operation.id} failed: {e}") from e

        self._logger.info(
            "operation_inserted",
            operation_id=operation.id,
            direction=operation.direction.value,
            amount=str(operation.amount_to_bridge),
        )
        return operation

    async def find_oldest_unfinished(self) -> RebalanceOperation | None:
        row = await self._fetchrow(
            f"SELECT {_COLUMNS} FROM rebalance_operations "
            "WHERE status = ANY($1::text[]) ORDER BY created_at ASC LIMIT 1",
            _UNFINISHED,
        )
        return _row_to_operation(row) if row is not None else None

    async def get(self, operation_id: str) -> RebalanceOperation | None:
        row = await self._fetchrow(
            f"SELECT {_COLUMNS} FROM rebalance_operations WHERE id = $1",
            _parse_id(operation_id),
        )
        return _row_to_operation(row) if row is not None else None

    async def latest(self) -> RebalanceOperation | None:
        row = await self._fetchrow(
            f"SELECT {_COLUMNS} FROM rebalance_operations ORDER BY created_at DESC LIMIT 1"
        )
        return _row_to_operation(row) if row is not None else None

    async def update_status(
        self,
        operation_id: str,
        status: OperationStatus,
        *,
        bridge_txhash: str | None = None,
        error_message: str | None = None,
        submitted_step: str | None = None,
    ) -> RebalanceOperation:
        row_id = _parse_id(operation_id)
        try:
            async with self._pool.acquire() as conn, conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM rebalance_operations WHERE id = $1 FOR UPDATE",
                    row_id,
                )
                if row is None:
                    raise PersistenceError(f"Operation {operation_id} not found")
                updated = _row_to_operation(row).transition(
                    status,
                    bridge_txhash=bridge_txhash,
                    error_message=error_message,
                    submitted_step=submitted_step,
                )
                await conn.execute(
                    "UPDATE rebalance_operations SET status = $2, bridge_txhash = $3, "
                    "error_message = $4, completed_at = $5, submitted_steps = $6 "
                    "WHERE id = $1",
                    row_id,
                    updated.status.value,
                    updated.bridge_txhash,
                    updated.error_message,
                    updated.completed_at,
                    list(updated.submitted_steps),
                )
        except _BACKEND_ERRORS as e:
            raise PersistenceError(f"Update of operation {operation_id} failed: {e}") from e

        self._logger.info(
            "operation_updated",
            operation_id=operation_id,
            status=updated.status.value,
            bridge_txhash=updated.bridge_txhash,
        )
        return updated

    async def _fetchrow(self, query: str, *args: Any) -> Mapping[str, Any] | None:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except _BACKEND_ERRORS as e:
            raise PersistenceError(f"Query failed: {e}") from e
