"""
Partition-scoped batch builder.

A Batch collects entity operations for one table and one partition key.
Nothing is sent until the batch is handed to ``TableService.execute_batch``.
"""

import logging
from typing import Any, Iterator, Mapping, Optional, Tuple

from .errors import InvalidArgument
from .models import KeyValidator, OperationDescriptor, OperationKind
from .types import encode_properties

logger = logging.getLogger(__name__)


class Batch:
    """
    Accumulates operations to be applied as one atomic transaction.

    Every append method returns the batch, so calls can be chained::

        batch = Batch("customers", "smith")
        batch.insert("john", {"Email": "john@example.com"}).delete("jane")

    A batch is single-use and is not safe for concurrent mutation.
    """

    def __init__(self, table_name: str, partition_key: str):
        """
        Args:
            table_name: Table the batch targets
            partition_key: Partition key shared by every operation

        Raises:
            InvalidArgument: If either argument is empty or the partition key is malformed
        """
        if not table_name or not isinstance(table_name, str):
            raise InvalidArgument("Table name cannot be empty")
        if not partition_key:
            raise InvalidArgument("PartitionKey cannot be empty")

        is_valid, error = KeyValidator.validate(partition_key)
        if not is_valid:
            raise InvalidArgument(f"Invalid PartitionKey '{partition_key}': {error}")

        self.table_name = table_name
        self.partition_key = partition_key
        self._operations: list[OperationDescriptor] = []
        self._executed = False
        # Filled by TableService.batch() after execution
        self.etags: Optional[list] = None

    def __len__(self) -> int:
        return len(self._operations)

    def __iter__(self) -> Iterator[OperationDescriptor]:
        return iter(self._operations)

    def __repr__(self) -> str:
        return (
            f"Batch(table_name={self.table_name!r}, "
            f"partition_key={self.partition_key!r}, operations={len(self)})"
        )

    @property
    def is_empty(self) -> bool:
        return not self._operations

    @property
    def executed(self) -> bool:
        return self._executed

    def insert(self, row_key: str, properties: Mapping[str, Any]) -> "Batch":
        """Add an insert; the service rejects it if the row already exists."""
        return self._append(OperationKind.INSERT, row_key, properties)

    def update(
        self,
        row_key: str,
        properties: Mapping[str, Any],
        if_match: Optional[str] = None,
    ) -> "Batch":
        """
        Add a full replace of an existing entity.

        Properties missing from ``properties`` are removed from the stored
        entity. A property given with value None is stored as a null property.

        Args:
            row_key: Row to replace
            properties: Complete new property set
            if_match: ETag the stored entity must carry; None or "*" for unconditional
        """
        return self._append(OperationKind.UPDATE, row_key, properties, if_match)

    def merge(
        self,
        row_key: str,
        properties: Mapping[str, Any],
        if_match: Optional[str] = None,
    ) -> "Batch":
        """
        Add a partial update of an existing entity.

        Only the given properties are written; all others are left untouched.
        """
        return self._append(OperationKind.MERGE, row_key, properties, if_match)

    def delete(self, row_key: str, if_match: str = "*") -> "Batch":
        """
        Add a delete of an existing entity.

        Args:
            row_key: Row to delete
            if_match: ETag the stored entity must carry, or "*" for unconditional
        """
        return self._append(OperationKind.DELETE, row_key, None, if_match)

    def insert_or_replace(self, row_key: str, properties: Mapping[str, Any]) -> "Batch":
        """Add an upsert that replaces the entity if it exists."""
        return self._append(OperationKind.INSERT_OR_REPLACE, row_key, properties)

    def insert_or_merge(self, row_key: str, properties: Mapping[str, Any]) -> "Batch":
        """Add an upsert that merges into the entity if it exists."""
        return self._append(OperationKind.INSERT_OR_MERGE, row_key, properties)

    def snapshot(self) -> Tuple[OperationDescriptor, ...]:
        """Immutable view of the operations in append order."""
        return tuple(self._operations)

    def mark_executed(self) -> None:
        """Consume the batch. Called by the executor before sending."""
        self._executed = True

    def _append(
        self,
        kind: OperationKind,
        row_key: str,
        properties: Optional[Mapping[str, Any]],
        if_match: Optional[str] = None,
    ) -> "Batch":
        if self._executed:
            raise InvalidArgument("Batch has already been executed")

        is_valid, error = KeyValidator.validate(row_key)
        if not is_valid:
            raise InvalidArgument(f"Invalid RowKey '{row_key}': {error}")

        payload = None
        if kind is not OperationKind.DELETE:
            payload = self._strip_keys(row_key, properties)
            # Fail on unencodable values now rather than at execute time
            encode_properties(payload)

        descriptor = OperationDescriptor(
            kind=kind,
            row_key=row_key,
            payload=payload,
            if_match_etag=if_match,
        )
        self._operations.append(descriptor)
        logger.debug(
            f"Added {kind.value} for RowKey '{row_key}' to batch "
            f"'{self.table_name}'/'{self.partition_key}' ({len(self)} operations)"
        )
        return self

    def _strip_keys(self, row_key: str, properties: Optional[Mapping[str, Any]]) -> dict:
        """Check embedded PartitionKey/RowKey against the addressing and drop them."""
        if properties is None:
            raise InvalidArgument("Properties are required for this operation")
        if not isinstance(properties, Mapping):
            raise InvalidArgument(
                f"Properties must be a mapping, got {type(properties).__name__}"
            )

        payload = dict(properties)

        partition_key = payload.pop("PartitionKey", self.partition_key)
        if partition_key != self.partition_key:
            raise InvalidArgument(
                f"PartitionKey '{partition_key}' does not match batch "
                f"PartitionKey '{self.partition_key}'"
            )

        embedded_row_key = payload.pop("RowKey", row_key)
        if embedded_row_key != row_key:
            raise InvalidArgument(
                f"RowKey '{embedded_row_key}' does not match operation RowKey '{row_key}'"
            )

        return payload
