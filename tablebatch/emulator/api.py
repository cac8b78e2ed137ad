"""
FastAPI endpoints for the table storage emulator.

Implements the entity group transaction endpoint (``$batch``) and the
entity read path, plus table creation for test and development setup.
"""

import json
import re
import uuid
from typing import List, Optional
from urllib.parse import unquote, urlsplit

from fastapi import APIRouter, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from tablebatch.table.models import OperationKind
from tablebatch.table.types import decode_properties
from tablebatch.table.wire import (
    HttpRequest,
    HttpResponse,
    WireFormatError,
    flatten_changesets,
    parse_http_request,
    render_http_response,
    render_multipart,
)

from .backend import backend
from .exceptions import (
    BatchOperationError,
    InvalidInputError,
    TableServiceError,
)
from .models import BatchOperation

router = APIRouter(prefix="/table", tags=["table-storage"])

API_VERSION = "2019-02-02"

# /table/{account}/{table} or /table/{account}/{table}(PartitionKey='pk',RowKey='rk').
# Table names and keys arrive percent-encoded, so "/" and "'" only delimit.
_SUB_REQUEST_PATH = re.compile(
    r"^/table/(?P<account>[^/]+)/(?P<table>[^/()]+)"
    r"(?:\(PartitionKey='(?P<pk>[^']*)',RowKey='(?P<rk>[^']*)'\))?$"
)

_SYSTEM_PROPERTIES = ("PartitionKey", "RowKey", "Timestamp")


def _service_headers() -> dict:
    return {
        "x-ms-request-id": str(uuid.uuid4()),
        "x-ms-version": API_VERSION,
    }


def _decode_key(raw: str) -> str:
    return unquote(raw).replace("''", "'")


def create_error_response(error_code: str, message: str, status_code: int) -> JSONResponse:
    """
    Create an OData JSON error response.

    Args:
        error_code: Service error code
        message: Error message
        status_code: HTTP status code
    """
    return JSONResponse(
        status_code=status_code,
        content={
            "odata.error": {
                "code": error_code,
                "message": {"lang": "en-US", "value": message}
            }
        },
        headers=_service_headers(),
    )


def parse_operation(sub_request: HttpRequest, account_name: str) -> BatchOperation:
    """
    Resolve one embedded request into a batch operation.

    PUT and MERGE without If-Match are upserts (insert-or-replace,
    insert-or-merge); with If-Match they require an existing entity.

    Raises:
        InvalidInputError: If the method, path or body is not a valid entity operation
    """
    url = urlsplit(sub_request.url)
    match = _SUB_REQUEST_PATH.match(url.path)
    if match is None or url.query or url.fragment:
        raise InvalidInputError(f"Unsupported request URI '{sub_request.url}'")
    if unquote(match.group("account")) != account_name:
        raise InvalidInputError(f"Request URI '{sub_request.url}' addresses another account")

    table_name = unquote(match.group("table"))
    addresses_entity = match.group("pk") is not None
    if_match = sub_request.header("If-Match")
    method = sub_request.method

    if method == "POST" and not addresses_entity:
        kind = OperationKind.INSERT
    elif method == "PUT" and addresses_entity:
        kind = OperationKind.UPDATE if if_match else OperationKind.INSERT_OR_REPLACE
    elif method in ("MERGE", "PATCH") and addresses_entity:
        kind = OperationKind.MERGE if if_match else OperationKind.INSERT_OR_MERGE
    elif method == "DELETE" and addresses_entity:
        kind = OperationKind.DELETE
        if_match = if_match or "*"
    else:
        raise InvalidInputError(f"Method {method} is not valid for '{sub_request.url}'")

    body = {}
    if kind is not OperationKind.DELETE:
        try:
            body = json.loads(sub_request.body or b"{}")
        except ValueError as e:
            raise InvalidInputError(f"Request body is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise InvalidInputError("Request body must be a JSON object")

    try:
        properties = decode_properties(body)
    except (ValueError, TypeError) as e:
        raise InvalidInputError(f"Invalid property value: {e}") from e

    body_pk = properties.get("PartitionKey")
    body_rk = properties.get("RowKey")
    if addresses_entity:
        partition_key = _decode_key(match.group("pk"))
        row_key = _decode_key(match.group("rk"))
        if (body_pk is not None and body_pk != partition_key) or (
            body_rk is not None and body_rk != row_key
        ):
            raise InvalidInputError("Keys in the request body do not match the request URI")
    else:
        if not isinstance(body_pk, str) or not isinstance(body_rk, str):
            raise InvalidInputError("PartitionKey and RowKey are required")
        partition_key, row_key = body_pk, body_rk

    for name in _SYSTEM_PROPERTIES:
        properties.pop(name, None)

    return BatchOperation(
        kind=kind,
        table_name=table_name,
        partition_key=partition_key,
        row_key=row_key,
        properties=properties,
        if_match=if_match,
        content_id=sub_request.header("Content-ID"),
    )


def parse_batch(body: bytes, content_type: Optional[str], account_name: str) -> List[BatchOperation]:
    """
    Parse a ``$batch`` body into operations, in order.

    Raises:
        WireFormatError: If the multipart framing is broken
        BatchOperationError: If one sub-request is not a valid operation
    """
    operations = []
    for index, (_, content) in enumerate(flatten_changesets(body, content_type)):
        sub_request = parse_http_request(content)
        try:
            operations.append(parse_operation(sub_request, account_name))
        except InvalidInputError as e:
            raise BatchOperationError(index, e) from e
    return operations


def render_batch_response(parts: List[HttpResponse]) -> Response:
    """Wrap embedded responses in a changeset inside a 202 batch response."""
    changeset_boundary = f"changesetresponse_{uuid.uuid4()}"
    batch_boundary = f"batchresponse_{uuid.uuid4()}"

    changeset = render_multipart(changeset_boundary, [
        (
            {"Content-Type": "application/http", "Content-Transfer-Encoding": "binary"},
            render_http_response(part),
        )
        for part in parts
    ])
    body = render_multipart(batch_boundary, [
        ({"Content-Type": f"multipart/mixed; boundary={changeset_boundary}"}, changeset),
    ])

    return Response(
        status_code=status.HTTP_202_ACCEPTED,
        content=body,
        media_type=f"multipart/mixed; boundary={batch_boundary}",
        headers=_service_headers(),
    )


def _error_part(error: BatchOperationError, content_id: Optional[str]) -> HttpResponse:
    headers = {
        "X-Content-Type-Options": "nosniff",
        "DataServiceVersion": "3.0;",
        "Content-Type": "application/json;odata=minimalmetadata;streaming=true;charset=utf-8",
    }
    if content_id:
        headers["Content-ID"] = content_id
    return HttpResponse(
        status=error.status_code,
        headers=headers,
        body=json.dumps(error.to_dict()).encode("utf-8"),
    )


@router.post(
    "/{account_name}/Tables",
    status_code=status.HTTP_201_CREATED,
    summary="Create Table",
)
async def create_table(account_name: str, request: Request) -> JSONResponse:
    """
    Create a new table.

    Returns:
        201 Created with table metadata

    Raises:
        400 Bad Request: Invalid table name
        409 Conflict: Table already exists
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    table_name = body.get("TableName", "") if isinstance(body, dict) else ""

    if not table_name:
        return create_error_response("InvalidInput", "TableName is required", status.HTTP_400_BAD_REQUEST)

    try:
        table = await backend.create_table(table_name)
    except TableServiceError as e:
        return create_error_response(e.error_code, e.message, e.status_code)

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "odata.metadata": f"{request.base_url}table/{account_name}/$metadata#Tables/@Element",
            "TableName": table,
        },
        headers=_service_headers(),
    )


@router.post(
    "/{account_name}/$batch",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Entity Group Transaction",
)
async def execute_batch(account_name: str, request: Request) -> Response:
    """
    Apply a changeset of entity operations atomically.

    Returns:
        202 Accepted with a multipart body: one 204 part per operation on
        success, or a single error part naming the failing operation.

    Raises:
        400 Bad Request: The multipart body itself is malformed
    """
    body = await request.body()
    try:
        operations = parse_batch(body, request.headers.get("content-type"), account_name)
    except WireFormatError as e:
        return create_error_response("InvalidInput", f"Malformed batch request: {e}", status.HTTP_400_BAD_REQUEST)
    except BatchOperationError as e:
        return render_batch_response([_error_part(e, str(e.index + 1))])

    try:
        etags = await backend.execute_batch(operations)
    except BatchOperationError as e:
        content_id = None
        if e.index < len(operations):
            content_id = operations[e.index].content_id
        return render_batch_response([_error_part(e, content_id)])

    parts = []
    for operation, etag in zip(operations, etags):
        headers = {
            "X-Content-Type-Options": "nosniff",
            "Cache-Control": "no-cache",
            "DataServiceVersion": "1.0;",
        }
        if operation.content_id:
            headers["Content-ID"] = operation.content_id
        if etag is not None:
            headers["ETag"] = etag
        parts.append(HttpResponse(status=status.HTTP_204_NO_CONTENT, headers=headers))

    return render_batch_response(parts)


@router.get(
    "/{account_name}/{table_name}(PartitionKey='{partition_key}',RowKey='{row_key}')",
    status_code=status.HTTP_200_OK,
    summary="Get Entity",
)
async def get_entity(
    account_name: str,
    table_name: str,
    partition_key: str,
    row_key: str,
) -> JSONResponse:
    """
    Get an entity by partition and row keys.

    Returns:
        200 OK with entity data and ETag header

    Raises:
        404 Not Found: Table or entity not found
    """
    try:
        entity = await backend.get_entity(
            table_name,
            partition_key.replace("''", "'"),
            row_key.replace("''", "'"),
        )
    except TableServiceError as e:
        return create_error_response(e.error_code, e.message, e.status_code)

    headers = _service_headers()
    headers["ETag"] = entity.etag
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=entity.to_wire(),
        media_type="application/json;odata=minimalmetadata",
        headers=headers,
    )


def create_app() -> FastAPI:
    """
    Create the emulator application.

    Returns:
        FastAPI application serving the table router and a health check
    """
    from tablebatch import __version__

    app = FastAPI(
        title="tablebatch emulator",
        description="In-memory table storage with entity group transactions",
        version=__version__,
    )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    app.include_router(router)
    return app
