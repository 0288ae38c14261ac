"""Operation persistence (PostgreSQL, in-memory).

Re-exports core storage classes:

    from balbot.storage import PostgresOperationStore
"""

from balbot.storage.operation_store import InMemoryOperationStore, OperationStore
from balbot.storage.postgres import PostgresOperationStore

__all__ = [
    "InMemoryOperationStore",
    "OperationStore",
    "PostgresOperationStore",
]
