"""
Unit tests for the httpx-backed transport.
"""

import httpx
import pytest

from tablebatch.table.transport import HttpxTransport
from tablebatch.table.wire import HttpRequest


@pytest.fixture
def seen():
    return []


@pytest.fixture
def client(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            202,
            headers={"Content-Type": "multipart/mixed; boundary=batchresponse_1", "ETag": 'W/"1"'},
            content=b"--batchresponse_1--\r\n",
        )

    return httpx.Client(transport=httpx.MockTransport(handler), timeout=5.0)


class TestHttpxTransport:

    def test_send_round_trip(self, client, seen):
        transport = HttpxTransport(client)

        response = transport.send(HttpRequest(
            method="POST",
            url="http://testserver/table/acct/$batch",
            headers={"Content-Type": "multipart/mixed; boundary=batch_1"},
            body=b"--batch_1--\r\n",
        ))

        assert response.status == 202
        assert response.header("etag") == 'W/"1"'
        assert response.body == b"--batchresponse_1--\r\n"
        assert seen[0].method == "POST"
        assert seen[0].content == b"--batch_1--\r\n"
        assert seen[0].headers["content-type"] == "multipart/mixed; boundary=batch_1"

    def test_injected_client_keeps_its_timeout(self, client, seen):
        transport = HttpxTransport(client, timeout=30.0)

        transport.send(HttpRequest(method="GET", url="http://testserver/health"))

        assert seen[0].extensions["timeout"]["read"] == 5.0

    def test_close_leaves_injected_client_open(self, client):
        HttpxTransport(client).close()

        assert not client.is_closed

    def test_close_owned_client(self):
        transport = HttpxTransport(timeout=2.0)
        assert transport._client.timeout.read == 2.0

        transport.close()

        assert transport._client.is_closed
