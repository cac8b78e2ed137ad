"""
Table emulator exception hierarchy.

Each exception carries the service error code and HTTP status the API
layer reports for it.
"""

from typing import Any, Dict


class TableServiceError(Exception):
    """
    Base exception for emulator errors.

    Attributes:
        message: Human-readable error message
        error_code: Service error code (e.g., 'ResourceNotFound')
        status_code: HTTP status reported to the client
    """

    error_code: str = "InternalError"
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """OData JSON error body."""
        return {
            "odata.error": {
                "code": self.error_code,
                "message": {"lang": "en-US", "value": self.message},
            }
        }


class InvalidInputError(TableServiceError):
    """Raised for malformed table names, keys, or batch layout."""
    error_code = "InvalidInput"
    status_code = 400


class DuplicateRowError(TableServiceError):
    """Raised when a batch addresses the same row twice."""
    error_code = "InvalidDuplicateRow"
    status_code = 400


class TableAlreadyExistsError(TableServiceError):
    """Raised when attempting to create a table that already exists."""
    error_code = "TableAlreadyExists"
    status_code = 409


class TableNotFoundError(TableServiceError):
    """Raised when a table is not found."""
    error_code = "TableNotFound"
    status_code = 404


class EntityAlreadyExistsError(TableServiceError):
    """Raised when attempting to insert an entity that already exists."""
    error_code = "EntityAlreadyExists"
    status_code = 409


class EntityNotFoundError(TableServiceError):
    """Raised when an entity is not found."""
    error_code = "ResourceNotFound"
    status_code = 404


class ETagMismatchError(TableServiceError):
    """Raised when If-Match does not match the stored ETag."""
    error_code = "UpdateConditionNotSatisfied"
    status_code = 412


class BatchOperationError(TableServiceError):
    """
    Raised when one operation of a batch fails; the batch was rolled back.

    Attributes:
        index: 0-based position of the failing operation
        cause: The underlying error
    """

    def __init__(self, index: int, cause: TableServiceError):
        super().__init__(f"{index}:{cause.message}")
        self.index = index
        self.cause = cause
        self.error_code = cause.error_code
        self.status_code = cause.status_code
