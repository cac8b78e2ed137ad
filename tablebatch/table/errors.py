"""
Exception hierarchy for table batch operations.

InvalidArgument is raised locally before any request is sent. Everything
the service or the network reports surfaces as an HttpError subclass.
"""

from typing import Optional


class TableError(Exception):
    """Base class for all tablebatch errors."""
    pass


class InvalidArgument(TableError, ValueError):
    """Raised when caller input is rejected before any network call."""
    pass


class HttpError(TableError):
    """
    A failure reported by the table service or the transport.

    Attributes:
        status_code: HTTP status of the failing response (None for transport failures)
        error_code: Service error code, e.g. "ResourceNotFound"
        message: Human-readable message from the service
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code

    def __str__(self) -> str:
        parts = []
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        if self.error_code:
            parts.append(f"({self.error_code})")
        parts.append(self.message)
        return " ".join(parts)


class BatchRejected(HttpError):
    """
    The service refused the whole batch; nothing in it was applied.

    Attributes:
        index: 0-based position of the failing operation, if the service named one
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        index: Optional[int] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code)
        self.index = index

    def __str__(self) -> str:
        text = super().__str__()
        if self.index is not None:
            return f"{text} [operation {self.index}]"
        return text


class TransportFailure(HttpError):
    """Connectivity or protocol failure below the batch layer."""
    pass
