"""
Unit tests for BatchExecutor and TableService using a scripted transport.
"""

import json

import httpx
import pytest

from tablebatch.core.config_manager import TableServiceConfig
from tablebatch.core.logging_config import correlation_id
from tablebatch.table.batch import Batch
from tablebatch.table.errors import (
    BatchRejected,
    HttpError,
    InvalidArgument,
    TransportFailure,
)
from tablebatch.table.serializer import BatchSerializer
from tablebatch.table.service import BatchExecutor, TableService
from tablebatch.table.wire import HttpResponse, render_http_response, render_multipart

ENDPOINT = "http://127.0.0.1:7071/table/devstoreaccount1"


class ScriptedTransport:
    """Records requests and answers with a canned response or exception."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []
        self.closed = False

    def send(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


def _accepted(*etags):
    changeset = render_multipart("changesetresponse_x", [
        (
            {"Content-Type": "application/http"},
            render_http_response(HttpResponse(
                status=204,
                headers={"ETag": etag} if etag else {},
            )),
        )
        for etag in etags
    ])
    body = render_multipart("batchresponse_x", [
        ({"Content-Type": "multipart/mixed; boundary=changesetresponse_x"}, changeset),
    ])
    return HttpResponse(
        status=202,
        headers={"content-type": "multipart/mixed; boundary=batchresponse_x"},
        body=body,
    )


def _executor(transport):
    return BatchExecutor(transport, BatchSerializer(ENDPOINT))


class TestBatchExecutor:

    def test_execute_returns_etags(self):
        transport = ScriptedTransport(_accepted('W/"1"', None))
        batch = Batch("customers", "smith").update("john", {"A": 1}).delete("jane")

        etags = _executor(transport).execute(batch)

        assert etags == ['W/"1"', None]
        assert len(transport.requests) == 1
        assert transport.requests[0].url == f"{ENDPOINT}/$batch"

    def test_empty_batch_sends_nothing(self):
        transport = ScriptedTransport()

        with pytest.raises(InvalidArgument) as exc_info:
            _executor(transport).execute(Batch("customers", "smith"))

        assert "empty" in str(exc_info.value)
        assert transport.requests == []

    def test_batch_is_consumed(self):
        transport = ScriptedTransport(_accepted('W/"1"'))
        executor = _executor(transport)
        batch = Batch("customers", "smith").insert("john", {"A": 1})

        executor.execute(batch)

        assert batch.executed
        with pytest.raises(InvalidArgument):
            executor.execute(batch)
        with pytest.raises(InvalidArgument):
            batch.insert("jane", {"A": 1})
        assert len(transport.requests) == 1

    def test_batch_consumed_even_when_rejected(self):
        transport = ScriptedTransport(HttpResponse(status=400, body=b"bad"))
        batch = Batch("customers", "smith").insert("john", {"A": 1})

        with pytest.raises(BatchRejected):
            _executor(transport).execute(batch)

        assert batch.executed

    def test_transport_error_becomes_transport_failure(self):
        request = httpx.Request("POST", f"{ENDPOINT}/$batch")
        transport = ScriptedTransport(error=httpx.ConnectTimeout("timed out", request=request))
        batch = Batch("customers", "smith").insert("john", {"A": 1})

        with pytest.raises(TransportFailure) as exc_info:
            _executor(transport).execute(batch)

        assert isinstance(exc_info.value.__cause__, httpx.ConnectTimeout)

    def test_top_level_rejection(self):
        body = json.dumps({
            "odata.error": {"code": "InvalidInput", "message": {"lang": "en-US", "value": "bad"}}
        }).encode()
        transport = ScriptedTransport(HttpResponse(status=400, body=body))
        batch = Batch("customers", "smith").insert("john", {"A": 1})

        with pytest.raises(BatchRejected) as exc_info:
            _executor(transport).execute(batch)

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "InvalidInput"

    def test_correlation_id_cleared_after_execute(self):
        transport = ScriptedTransport(_accepted('W/"1"'))

        _executor(transport).execute(Batch("customers", "smith").insert("john", {"A": 1}))

        assert correlation_id.get() is None


class TestTableService:

    def test_uses_endpoint(self):
        transport = ScriptedTransport(_accepted('W/"1"'))
        service = TableService(endpoint="http://example.test/table/acct/", transport=transport)

        service.execute_batch(Batch("customers", "smith").insert("john", {"A": 1}))

        assert transport.requests[0].url == "http://example.test/table/acct/$batch"

    def test_uses_config(self):
        transport = ScriptedTransport(_accepted('W/"1"'))
        config = TableServiceConfig(endpoint="http://example.test/acct", api_version="2020-12-06")
        service = TableService(config=config, transport=transport)

        service.execute_batch(Batch("customers", "smith").insert("john", {"A": 1}))

        assert transport.requests[0].header("x-ms-version") == "2020-12-06"

    def test_context_manager_closes_transport(self):
        transport = ScriptedTransport()

        with TableService(endpoint=ENDPOINT, transport=transport):
            pass

        assert transport.closed

    def test_batch_context_executes_on_exit(self):
        transport = ScriptedTransport(_accepted('W/"1"', 'W/"2"'))
        service = TableService(endpoint=ENDPOINT, transport=transport)

        with service.batch("customers", "smith") as batch:
            batch.insert("john", {"A": 1})
            batch.merge("jane", {"B": 2})

        assert batch.executed
        assert batch.etags == ['W/"1"', 'W/"2"']

    def test_batch_context_not_sent_when_block_raises(self):
        transport = ScriptedTransport(_accepted('W/"1"'))
        service = TableService(endpoint=ENDPOINT, transport=transport)

        with pytest.raises(RuntimeError):
            with service.batch("customers", "smith") as batch:
                batch.insert("john", {"A": 1})
                raise RuntimeError("abort")

        assert transport.requests == []
        assert not batch.executed

    def test_get_entity(self):
        body = json.dumps({
            "odata.etag": 'W/"1"',
            "PartitionKey": "smith",
            "RowKey": "john",
            "Timestamp": "2025-01-01T00:00:00.000000Z",
            "Visits@odata.type": "Edm.Int64",
            "Visits": "12",
            "Email": "john@example.com",
        }).encode()
        transport = ScriptedTransport(HttpResponse(status=200, headers={"etag": 'W/"1"'}, body=body))
        service = TableService(endpoint=ENDPOINT, transport=transport)

        entity = service.get_entity("customers", "smith", "john")

        assert transport.requests[0].method == "GET"
        assert transport.requests[0].url == f"{ENDPOINT}/customers(PartitionKey='smith',RowKey='john')"
        assert entity.partition_key == "smith"
        assert entity.row_key == "john"
        assert entity.etag == 'W/"1"'
        assert entity.properties == {"Visits": 12, "Email": "john@example.com"}

    def test_get_entity_not_found(self):
        body = json.dumps({
            "odata.error": {"code": "ResourceNotFound", "message": {"lang": "en-US", "value": "missing"}}
        }).encode()
        transport = ScriptedTransport(HttpResponse(status=404, body=body))
        service = TableService(endpoint=ENDPOINT, transport=transport)

        with pytest.raises(HttpError) as exc_info:
            service.get_entity("customers", "smith", "john")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "ResourceNotFound"

    def test_get_entity_invalid_key(self):
        transport = ScriptedTransport()
        service = TableService(endpoint=ENDPOINT, transport=transport)

        with pytest.raises(InvalidArgument):
            service.get_entity("customers", "smith", "a/b")

        assert transport.requests == []

    @pytest.mark.parametrize("body", [
        {"PartitionKey": "smith", "RowKey": "john", "G": 5, "G@odata.type": "Edm.Guid"},
        {"PartitionKey": "smith", "RowKey": "john", "When": 5, "When@odata.type": "Edm.DateTime"},
        ["not", "an", "entity"],
    ])
    def test_get_entity_malformed_body(self, body):
        transport = ScriptedTransport(HttpResponse(status=200, body=json.dumps(body).encode()))
        service = TableService(endpoint=ENDPOINT, transport=transport)

        with pytest.raises(HttpError) as exc_info:
            service.get_entity("customers", "smith", "john")

        assert exc_info.value.error_code == "InvalidResponse"

    def test_get_entity_encodes_table_name(self):
        transport = ScriptedTransport(HttpResponse(status=404, body=b""))
        service = TableService(endpoint=ENDPOINT, transport=transport)

        with pytest.raises(HttpError):
            service.get_entity("other/customers", "smith", "john")

        assert transport.requests[0].url == (
            f"{ENDPOINT}/other%2Fcustomers(PartitionKey='smith',RowKey='john')"
        )
