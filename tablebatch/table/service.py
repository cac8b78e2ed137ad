"""
Table service client: batch execution and entity reads.
"""

import json
import logging
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional

import httpx

from tablebatch.core.config_manager import TableServiceConfig
from tablebatch.core.logging_config import batch_context, log_with_context

from .batch import Batch
from .demux import ResponseDemultiplexer, map_transport_error, parse_error_body
from .errors import BatchRejected, HttpError, InvalidArgument
from .models import Entity, KeyValidator
from .serializer import ACCEPT_MINIMAL_METADATA, BatchSerializer, entity_path
from .transport import HttpxTransport, Transport
from .wire import HttpRequest, boundary_from_content_type

logger = logging.getLogger(__name__)


class BatchExecutor:
    """
    Runs one batch per call: serialize, send, demultiplex.

    Holds no state between calls; independent batches may be executed from
    different threads through the same executor if the transport allows it.
    """

    def __init__(
        self,
        transport: Transport,
        serializer: BatchSerializer,
        demultiplexer: Optional[ResponseDemultiplexer] = None,
    ):
        self.transport = transport
        self.serializer = serializer
        self.demultiplexer = demultiplexer or ResponseDemultiplexer()

    def execute(self, batch: Batch) -> List[Optional[str]]:
        """
        Execute a batch atomically.

        Returns:
            New ETag per operation in batch order; None for deletes

        Raises:
            InvalidArgument: If the batch is empty or was already executed
            BatchRejected: If the service rejected the batch; nothing was applied
            TransportFailure: If the request could not be delivered
        """
        if batch.executed:
            raise InvalidArgument("Batch has already been executed")
        if batch.is_empty:
            raise InvalidArgument("Cannot execute an empty batch")

        operations = batch.snapshot()
        batch.mark_executed()

        request = self.serializer.serialize(batch.table_name, batch.partition_key, operations)
        batch_id = boundary_from_content_type(request.header("Content-Type"))
        started = time.perf_counter()
        with batch_context(batch_id):
            log_with_context(
                logger,
                logging.DEBUG,
                "Sending batch",
                table=batch.table_name,
                partition_key=batch.partition_key,
                operations=len(operations),
                bytes=len(request.body),
            )
            try:
                response = self.transport.send(request)
            except httpx.HTTPError as e:
                logger.error(f"Transport failure for batch on '{batch.table_name}': {e}")
                raise map_transport_error(e) from e

            try:
                etags = self.demultiplexer.demultiplex(response, operations)
            except BatchRejected as e:
                logger.warning(
                    f"Batch on '{batch.table_name}'/'{batch.partition_key}' rejected: {e}"
                )
                raise

            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"Executed batch of {len(operations)} operations on "
                f"'{batch.table_name}'/'{batch.partition_key}' in {elapsed_ms:.1f}ms"
            )
            return etags


class TableService:
    """
    Client for a table storage account.

    Args:
        endpoint: Account base URL; ignored when ``config`` is given
        transport: Transport to use; defaults to an HttpxTransport
        config: Full client configuration
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        transport: Optional[Transport] = None,
        config: Optional[TableServiceConfig] = None,
    ):
        if config is None:
            config = TableServiceConfig(endpoint=endpoint) if endpoint else TableServiceConfig()
        self.config = config
        self.transport = transport if transport is not None else HttpxTransport(timeout=config.timeout)
        self.serializer = BatchSerializer(config.endpoint, api_version=config.api_version)
        self.executor = BatchExecutor(self.transport, self.serializer)

    def __enter__(self) -> "TableService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.transport.close()

    def execute_batch(self, batch: Batch) -> List[Optional[str]]:
        """Execute ``batch`` and return one ETag per operation (None for deletes)."""
        return self.executor.execute(batch)

    @contextmanager
    def batch(self, table_name: str, partition_key: str) -> Iterator[Batch]:
        """
        Build a batch in a ``with`` block and execute it on exit.

        The batch is not sent if the block raises. Results are available
        afterwards as ``batch.etags``.
        """
        batch = Batch(table_name, partition_key)
        yield batch
        batch.etags = self.execute_batch(batch)

    def get_entity(self, table_name: str, partition_key: str, row_key: str) -> Entity:
        """
        Read one entity.

        Raises:
            InvalidArgument: If a key is malformed
            HttpError: If the service returns an error (e.g. 404 ResourceNotFound)
            TransportFailure: If the request could not be delivered
        """
        for label, key in (("PartitionKey", partition_key), ("RowKey", row_key)):
            is_valid, error = KeyValidator.validate(key)
            if not is_valid:
                raise InvalidArgument(f"Invalid {label} '{key}': {error}")

        request = HttpRequest(
            method="GET",
            url=entity_path(self.config.endpoint, table_name, partition_key, row_key),
            headers={
                "Accept": ACCEPT_MINIMAL_METADATA,
                "DataServiceVersion": "3.0",
                "x-ms-version": self.config.api_version,
            },
        )
        try:
            response = self.transport.send(request)
        except httpx.HTTPError as e:
            raise map_transport_error(e) from e

        if not response.ok:
            error_code, message = parse_error_body(response.status, response.body)
            raise HttpError(message, status_code=response.status, error_code=error_code)

        try:
            body = json.loads(response.body)
            if not isinstance(body, dict):
                raise ValueError("expected a JSON object")
            # Property codec failures raise InvalidArgument, a ValueError
            return Entity.from_wire(table_name, body, etag=response.header("ETag"))
        except ValueError as e:
            raise HttpError(
                f"Malformed entity response: {e}",
                status_code=response.status,
                error_code="InvalidResponse",
            ) from e
