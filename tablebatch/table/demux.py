"""
Batch response demultiplexer and error mapper.

Turns a ``$batch`` response into one ETag per operation, or into a single
BatchRejected. This is the only place where service and transport failures
are converted into tablebatch exceptions.
"""

import json
import logging
import re
from http import HTTPStatus
from typing import List, Optional, Sequence, Tuple

import httpx

from .errors import BatchRejected, TransportFailure
from .models import OperationDescriptor, OperationKind
from .wire import (
    HttpResponse,
    WireFormatError,
    flatten_changesets,
    get_header,
    parse_http_response,
)

logger = logging.getLogger(__name__)

# The service prefixes batch error messages with the failing operation's 0-based index
_INDEX_PREFIX = re.compile(r"^(\d+):(.*)$", re.DOTALL)


def parse_error_body(status: int, body: bytes) -> Tuple[Optional[str], str]:
    """
    Extract (error_code, message) from a service error body.

    Understands the OData JSON error shape
    ``{"odata.error": {"code": ..., "message": {"value": ...}}}`` as well as
    ``{"error": {"code": ..., "message": ...}}``; anything else is returned
    as raw text.
    """
    text = body.decode("utf-8", errors="replace").strip()
    try:
        payload = json.loads(text) if text else None
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("odata.error") or payload.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message")
            if isinstance(message, dict):
                message = message.get("value")
            if message is not None:
                return code, str(message)
            if code:
                return code, code

    if text:
        return None, text
    try:
        return None, HTTPStatus(status).phrase
    except ValueError:
        return None, f"HTTP {status}"


def map_error(
    status: int,
    body: bytes,
    content_id: Optional[str] = None,
    position: Optional[int] = None,
) -> BatchRejected:
    """
    Build the BatchRejected for a failed (top-level or embedded) response.

    The failing index is taken from the ``<n>:`` message prefix, then from
    the part's Content-ID (1-based), then from the part position.
    """
    error_code, message = parse_error_body(status, body)

    index: Optional[int] = None
    match = _INDEX_PREFIX.match(message)
    if match:
        index = int(match.group(1))
        message = match.group(2).strip()
    elif content_id and content_id.strip().isdigit():
        index = int(content_id) - 1
    elif position is not None:
        index = position

    return BatchRejected(message, status_code=status, error_code=error_code, index=index)


def map_transport_error(exc: httpx.HTTPError) -> TransportFailure:
    """Wrap an httpx failure. Callers chain the original with ``raise ... from``."""
    return TransportFailure(f"{type(exc).__name__}: {exc}")


class ResponseDemultiplexer:
    """Correlates the parts of a batch response with the batch operations by position."""

    def demultiplex(
        self,
        response: HttpResponse,
        operations: Sequence[OperationDescriptor],
    ) -> List[Optional[str]]:
        """
        Map a ``$batch`` response to per-operation ETags.

        Returns:
            One entry per operation, in order: the new ETag, or None for deletes

        Raises:
            BatchRejected: If the batch or any operation in it failed, or the
                response cannot be correlated with the operations
        """
        if not response.ok:
            # Service rejected the request as a whole; no parts to read
            raise map_error(response.status, response.body)

        try:
            parts = flatten_changesets(response.body, response.header("Content-Type"))
        except WireFormatError as e:
            raise BatchRejected(
                f"Malformed batch response: {e}",
                status_code=response.status,
                error_code="InvalidBatchResponse",
            ) from e

        positional = len(parts) == len(operations)
        sub_responses: List[HttpResponse] = []
        for position, (headers, content) in enumerate(parts):
            try:
                sub_response = parse_http_response(content)
            except WireFormatError as e:
                raise BatchRejected(
                    f"Malformed response part {position}: {e}",
                    status_code=response.status,
                    error_code="InvalidBatchResponse",
                ) from e

            if not sub_response.ok:
                content_id = sub_response.header("Content-ID") or get_header(headers, "Content-ID")
                raise map_error(
                    sub_response.status,
                    sub_response.body,
                    content_id=content_id,
                    position=position if positional else None,
                )
            sub_responses.append(sub_response)

        if not positional:
            raise BatchRejected(
                f"Response part count mismatch: expected {len(operations)}, got {len(parts)}",
                status_code=response.status,
                error_code="InvalidBatchResponse",
            )

        etags: List[Optional[str]] = []
        for position, (operation, sub_response) in enumerate(zip(operations, sub_responses)):
            if operation.kind is OperationKind.DELETE:
                etags.append(None)
                continue
            etag = sub_response.header("ETag")
            if not etag:
                raise BatchRejected(
                    f"Response part {position} for {operation.kind.value} "
                    f"of RowKey '{operation.row_key}' carries no ETag",
                    status_code=sub_response.status,
                    error_code="InvalidBatchResponse",
                    index=position,
                )
            etags.append(etag)

        logger.debug(f"Demultiplexed {len(etags)} batch response parts")
        return etags
