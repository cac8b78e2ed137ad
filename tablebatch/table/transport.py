"""
HTTP transport for the table client.

The executor only needs ``send(request) -> response``. HttpxTransport is
the default implementation; anything with the same two methods can be
passed instead. No retries happen at this layer.
"""

import logging
from typing import Optional, Protocol

import httpx

from .wire import HttpRequest, HttpResponse

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Sends one HTTP request and returns its response."""

    def send(self, request: HttpRequest) -> HttpResponse:
        ...

    def close(self) -> None:
        ...


class HttpxTransport:
    """
    Transport backed by an ``httpx.Client``.

    Args:
        client: Client to use; any httpx.Client subclass works, including
            FastAPI's TestClient. A private client is created when omitted.
        timeout: Request timeout in seconds for the private client. An
            injected client keeps its own timeout settings.

    Raises from ``send``:
        httpx.HTTPError: On connection, protocol or timeout failures
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def send(self, request: HttpRequest) -> HttpResponse:
        logger.debug(f"{request.method} {request.url} ({len(request.body)} bytes)")
        response = self._client.request(
            request.method,
            request.url,
            headers=request.headers,
            content=request.body,
        )
        logger.debug(f"{request.method} {request.url} -> {response.status_code}")
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
