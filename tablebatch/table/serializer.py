"""
Batch serializer.

Renders a batch as one entity group transaction: a ``$batch`` POST whose
body holds a single changeset with one embedded request per operation.
Output depends only on the batch contents, so a resend of the same batch
produces a byte-identical request.
"""

import hashlib
import json
from typing import Sequence
from urllib.parse import quote

from .models import OperationDescriptor, OperationKind
from .types import encode_properties
from .wire import HttpRequest, render_http_request, render_multipart

JSON_CONTENT_TYPE = "application/json"
ACCEPT_MINIMAL_METADATA = "application/json;odata=minimalmetadata"
DATA_SERVICE_VERSION = "3.0"


def quote_key(key: str) -> str:
    """Quote a key for use inside an OData key predicate."""
    return quote(key.replace("'", "''"), safe="")


def table_path(base_url: str, table_name: str) -> str:
    """URL of a table. The name is a single path segment, so "/", "?" and "#" are encoded."""
    return f"{base_url}/{quote(table_name, safe='')}"


def entity_path(base_url: str, table_name: str, partition_key: str, row_key: str) -> str:
    """URL of one entity: ``{base}/{table}(PartitionKey='pk',RowKey='rk')``."""
    return (
        f"{table_path(base_url, table_name)}"
        f"(PartitionKey='{quote_key(partition_key)}',RowKey='{quote_key(row_key)}')"
    )


class BatchSerializer:
    """
    Turns batch operations into a transactional ``$batch`` request.

    Args:
        base_url: Account endpoint, e.g. ``http://127.0.0.1:7071/table/devstoreaccount1``
        api_version: Value of the ``x-ms-version`` header
    """

    def __init__(self, base_url: str, api_version: str = "2019-02-02"):
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version

    def serialize(
        self,
        table_name: str,
        partition_key: str,
        operations: Sequence[OperationDescriptor],
    ) -> HttpRequest:
        """
        Build the ``$batch`` request for the given operations, in order.

        Each embedded request carries ``Content-ID`` equal to its 1-based
        position so the service can name a failing operation.
        """
        changeset_parts = []
        for index, operation in enumerate(operations, start=1):
            sub_request = self.serialize_operation(table_name, partition_key, operation, index)
            changeset_parts.append((
                {
                    "Content-Type": "application/http",
                    "Content-Transfer-Encoding": "binary",
                },
                render_http_request(sub_request),
            ))

        digest = self._digest(table_name, partition_key, changeset_parts)
        changeset_boundary = f"changeset_{digest}"
        batch_boundary = f"batch_{digest}"

        changeset = render_multipart(changeset_boundary, changeset_parts)
        body = render_multipart(batch_boundary, [(
            {"Content-Type": f"multipart/mixed; boundary={changeset_boundary}"},
            changeset,
        )])

        return HttpRequest(
            method="POST",
            url=f"{self.base_url}/$batch",
            headers={
                "Content-Type": f"multipart/mixed; boundary={batch_boundary}",
                "Accept": ACCEPT_MINIMAL_METADATA,
                "DataServiceVersion": DATA_SERVICE_VERSION,
                "MaxDataServiceVersion": f"{DATA_SERVICE_VERSION};NetFx",
                "x-ms-version": self.api_version,
            },
            body=body,
        )

    def serialize_operation(
        self,
        table_name: str,
        partition_key: str,
        operation: OperationDescriptor,
        content_id: int,
    ) -> HttpRequest:
        """Build the embedded request for one operation."""
        if operation.kind.addresses_entity:
            url = entity_path(self.base_url, table_name, partition_key, operation.row_key)
        else:
            url = table_path(self.base_url, table_name)

        headers = {"Content-ID": str(content_id)}
        body = b""

        if operation.kind is not OperationKind.DELETE:
            entity = {"PartitionKey": partition_key, "RowKey": operation.row_key}
            entity.update(encode_properties(operation.payload))
            body = json.dumps(entity, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = JSON_CONTENT_TYPE
            headers["Content-Length"] = str(len(body))

        headers["Accept"] = ACCEPT_MINIMAL_METADATA
        headers["Prefer"] = "return-no-content"
        headers["DataServiceVersion"] = DATA_SERVICE_VERSION

        if_match = operation.if_match_header
        if if_match is not None:
            headers["If-Match"] = if_match

        return HttpRequest(
            method=operation.kind.http_method,
            url=url,
            headers=headers,
            body=body,
        )

    @staticmethod
    def _digest(table_name: str, partition_key: str, parts) -> str:
        """Content hash used for the multipart boundaries."""
        hasher = hashlib.sha256()
        hasher.update(table_name.encode("utf-8"))
        hasher.update(b"\x00")
        hasher.update(partition_key.encode("utf-8"))
        for _, content in parts:
            hasher.update(b"\x00")
            hasher.update(content)
        return hasher.hexdigest()[:32]
