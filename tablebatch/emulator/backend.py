"""
In-memory table storage backend.

Stores tables and entities in memory and applies entity group transactions
atomically: every operation of a batch succeeds, or none is applied.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from tablebatch.table.models import KeyValidator, OperationKind, TableNameValidator

from .exceptions import (
    BatchOperationError,
    DuplicateRowError,
    EntityAlreadyExistsError,
    EntityNotFoundError,
    ETagMismatchError,
    InvalidInputError,
    TableAlreadyExistsError,
    TableNotFoundError,
    TableServiceError,
)
from .models import BatchOperation, StoredEntity

logger = logging.getLogger(__name__)

MAX_BATCH_OPERATIONS = 100

EntityKey = Tuple[str, str]


class TableBackend:
    """
    In-memory backend for table storage emulation.

    All mutations run under one asyncio lock. A batch is applied to a copy
    of the table and swapped in only when every operation succeeded.
    """

    def __init__(self):
        self._tables: Dict[str, str] = {}
        # table_name -> {(partition_key, row_key): StoredEntity}
        self._entities: Dict[str, Dict[EntityKey, StoredEntity]] = defaultdict(dict)
        self._last_timestamp: Optional[datetime] = None
        self._lock = asyncio.Lock()

    async def reset(self) -> None:
        """Reset all tables and entities."""
        async with self._lock:
            self._tables.clear()
            self._entities.clear()
            self._last_timestamp = None

    async def create_table(self, table_name: str) -> str:
        """
        Create a new table.

        Raises:
            InvalidInputError: If the name breaks table naming rules
            TableAlreadyExistsError: If table already exists
        """
        is_valid, error = TableNameValidator.validate(table_name)
        if not is_valid:
            raise InvalidInputError(error)

        async with self._lock:
            if self._find_table_key(table_name) is not None:
                raise TableAlreadyExistsError(f"Table '{table_name}' already exists")

            self._tables[table_name.lower()] = table_name
            self._entities[table_name.lower()] = {}
            logger.info(f"Created table '{table_name}'")
            return table_name

    async def get_entity(self, table_name: str, partition_key: str, row_key: str) -> StoredEntity:
        """
        Get an entity by partition and row keys.

        Raises:
            TableNotFoundError: If table not found
            EntityNotFoundError: If entity not found
        """
        async with self._lock:
            table_key = self._require_table(table_name)
            entity = self._entities[table_key].get((partition_key, row_key))
            if entity is None:
                raise EntityNotFoundError(
                    f"Entity with PartitionKey '{partition_key}' "
                    f"and RowKey '{row_key}' not found"
                )
            return entity.model_copy(deep=True)

    async def execute_batch(self, operations: Sequence[BatchOperation]) -> List[Optional[str]]:
        """
        Apply a batch atomically.

        Returns:
            New ETag per operation, None for deletes

        Raises:
            BatchOperationError: Wrapping the first failure, with its index.
                No operation of the batch has been applied.
        """
        self._validate_layout(operations)

        async with self._lock:
            table_name = operations[0].table_name
            table_key = self._find_table_key(table_name)
            if table_key is None:
                raise BatchOperationError(0, TableNotFoundError(f"Table '{table_name}' not found"))

            # Entries are replaced, never mutated, so a shallow copy isolates the batch
            working = dict(self._entities[table_key])
            etags: List[Optional[str]] = []
            for index, operation in enumerate(operations):
                try:
                    etags.append(self._apply(working, operation))
                except TableServiceError as e:
                    logger.info(
                        f"Batch on '{table_name}' rolled back at operation {index}: {e.message}"
                    )
                    raise BatchOperationError(index, e) from e

            self._entities[table_key] = working
            logger.debug(f"Committed batch of {len(operations)} operations on '{table_name}'")
            return etags

    def _validate_layout(self, operations: Sequence[BatchOperation]) -> None:
        """Checks that hold for the batch as a whole, before touching storage."""
        if not operations:
            raise BatchOperationError(0, InvalidInputError("Batch contains no operations"))
        if len(operations) > MAX_BATCH_OPERATIONS:
            raise BatchOperationError(
                MAX_BATCH_OPERATIONS,
                InvalidInputError(f"Batch exceeds {MAX_BATCH_OPERATIONS} operations"),
            )

        first = operations[0]
        is_valid, error = TableNameValidator.validate(first.table_name)
        if not is_valid:
            raise BatchOperationError(0, InvalidInputError(error))

        seen_rows = set()
        for index, operation in enumerate(operations):
            if operation.table_name.lower() != first.table_name.lower():
                raise BatchOperationError(
                    index, InvalidInputError("All operations in a batch must target one table")
                )
            if operation.partition_key != first.partition_key:
                raise BatchOperationError(
                    index, InvalidInputError("All operations in a batch must share one PartitionKey")
                )
            for label, key in (("PartitionKey", operation.partition_key), ("RowKey", operation.row_key)):
                is_valid, error = KeyValidator.validate(key)
                if not is_valid:
                    raise BatchOperationError(index, InvalidInputError(f"Invalid {label}: {error}"))
            if operation.row_key in seen_rows:
                raise BatchOperationError(
                    index,
                    DuplicateRowError(f"RowKey '{operation.row_key}' appears more than once in the batch"),
                )
            seen_rows.add(operation.row_key)

    def _apply(self, working: Dict[EntityKey, StoredEntity], operation: BatchOperation) -> Optional[str]:
        key = (operation.partition_key, operation.row_key)
        existing = working.get(key)
        kind = operation.kind

        if kind is OperationKind.INSERT:
            if existing is not None:
                raise EntityAlreadyExistsError(
                    f"Entity with PartitionKey '{operation.partition_key}' "
                    f"and RowKey '{operation.row_key}' already exists"
                )
            return self._store(working, operation, dict(operation.properties))

        if kind in (OperationKind.UPDATE, OperationKind.MERGE, OperationKind.DELETE):
            if existing is None:
                raise EntityNotFoundError(
                    f"Entity with PartitionKey '{operation.partition_key}' "
                    f"and RowKey '{operation.row_key}' not found"
                )
            self._check_etag(existing, operation.if_match)

        if kind is OperationKind.DELETE:
            del working[key]
            return None

        if kind in (OperationKind.UPDATE, OperationKind.INSERT_OR_REPLACE) or existing is None:
            properties = dict(operation.properties)
        else:
            # MERGE / INSERT_OR_MERGE onto an existing entity
            properties = dict(existing.properties)
            properties.update(operation.properties)

        return self._store(working, operation, properties)

    def _store(self, working: Dict[EntityKey, StoredEntity], operation: BatchOperation, properties: dict) -> str:
        timestamp = self._next_timestamp()
        entity = StoredEntity(
            partition_key=operation.partition_key,
            row_key=operation.row_key,
            timestamp=timestamp,
            etag=StoredEntity.generate_etag(timestamp),
            properties=properties,
        )
        working[(operation.partition_key, operation.row_key)] = entity
        return entity.etag

    @staticmethod
    def _check_etag(existing: StoredEntity, if_match: Optional[str]) -> None:
        if if_match and if_match != "*" and existing.etag != if_match:
            raise ETagMismatchError(
                f"ETag mismatch: expected '{if_match}', got '{existing.etag}'"
            )

    def _next_timestamp(self) -> datetime:
        """Strictly increasing timestamps, so every write gets a distinct ETag."""
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _find_table_key(self, table_name: str) -> Optional[str]:
        """Table names compare case-insensitively."""
        key = table_name.lower()
        return key if key in self._tables else None

    def _require_table(self, table_name: str) -> str:
        table_key = self._find_table_key(table_name)
        if table_key is None:
            raise TableNotFoundError(f"Table '{table_name}' not found")
        return table_key


# Global backend instance
backend = TableBackend()
