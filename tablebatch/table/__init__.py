"""
Table storage batch client.

Builds partition-scoped entity batches, serializes them as entity group
transactions, and maps the service response to per-operation ETags.
"""

from tablebatch.table.batch import Batch
from tablebatch.table.errors import (
    TableError,
    InvalidArgument,
    HttpError,
    BatchRejected,
    TransportFailure,
)
from tablebatch.table.models import (
    Entity,
    KeyValidator,
    OperationDescriptor,
    OperationKind,
    TableNameValidator,
    is_valid_key,
)
from tablebatch.table.types import EdmType, TypedValue
from tablebatch.table.service import BatchExecutor, TableService
from tablebatch.table.transport import HttpxTransport, Transport

__all__ = [
    "Batch",
    "BatchExecutor",
    "TableService",
    "Entity",
    "EdmType",
    "TypedValue",
    "KeyValidator",
    "TableNameValidator",
    "is_valid_key",
    "OperationDescriptor",
    "OperationKind",
    "HttpxTransport",
    "Transport",
    "TableError",
    "InvalidArgument",
    "HttpError",
    "BatchRejected",
    "TransportFailure",
]
