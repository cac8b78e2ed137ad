"""
HTTP message and multipart/mixed framing for entity group transactions.

A batch request is a ``multipart/mixed`` body holding one changeset, itself
``multipart/mixed``, whose parts are ``application/http`` messages: one
embedded HTTP request per operation. Responses mirror that layout with
embedded HTTP responses. Both the client and the emulator use these helpers.
"""

from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Dict, List, Mapping, Optional, Tuple

CRLF = b"\r\n"
HTTP_VERSION = "HTTP/1.1"

Part = Tuple[Dict[str, str], bytes]


class WireFormatError(ValueError):
    """Raised when a multipart body or embedded HTTP message cannot be parsed."""
    pass


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


@dataclass
class HttpRequest:
    """An outgoing (or embedded) HTTP request."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        return get_header(self.headers, name)


@dataclass
class HttpResponse:
    """An HTTP response, top-level or embedded in a batch response."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        return get_header(self.headers, name)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def boundary_from_content_type(content_type: Optional[str]) -> str:
    """
    Extract the boundary parameter of a multipart Content-Type.

    Raises:
        WireFormatError: If the header is missing or not multipart
    """
    if not content_type:
        raise WireFormatError("Missing Content-Type header")

    media_type, _, params = content_type.partition(";")
    if not media_type.strip().lower().startswith("multipart/"):
        raise WireFormatError(f"Expected a multipart Content-Type, got '{media_type.strip()}'")

    for param in params.split(";"):
        name, _, value = param.strip().partition("=")
        if name.lower() == "boundary" and value:
            return value.strip().strip('"')

    raise WireFormatError("Content-Type has no boundary parameter")


def _decode(raw: bytes, what: str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WireFormatError(f"{what} is not valid UTF-8: {raw!r}") from e


def _boundary_delimiter(boundary: str) -> bytes:
    try:
        return b"--" + boundary.encode("ascii")
    except UnicodeEncodeError as e:
        raise WireFormatError(f"Boundary '{boundary}' is not ASCII") from e


def render_headers(headers: Mapping[str, str]) -> bytes:
    return b"".join(f"{name}: {value}".encode("utf-8") + CRLF for name, value in headers.items())


def parse_headers(block: bytes) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for line in block.splitlines():
        if not line.strip():
            continue
        name, sep, value = _decode(line, "Header line").partition(":")
        if not sep:
            raise WireFormatError(f"Malformed header line: {line!r}")
        headers[name.strip()] = value.strip()
    return headers


def render_multipart(boundary: str, parts: List[Part]) -> bytes:
    """Render parts (headers, body) as a multipart body with the given boundary."""
    delimiter = _boundary_delimiter(boundary)
    chunks = []
    for headers, body in parts:
        chunks.append(delimiter + CRLF + render_headers(headers) + CRLF + body + CRLF)
    chunks.append(delimiter + b"--" + CRLF)
    return b"".join(chunks)


def parse_multipart(body: bytes, boundary: str) -> List[Part]:
    """
    Split a multipart body into (headers, body) parts.

    Raises:
        WireFormatError: If the boundary never appears or the close delimiter is missing
    """
    delimiter = _boundary_delimiter(boundary)
    segments = body.split(delimiter)
    if len(segments) < 2:
        raise WireFormatError(f"Boundary '{boundary}' not found in multipart body")

    parts: List[Part] = []
    for segment in segments[1:]:
        if segment.startswith(b"--"):
            return parts
        # Drop transport padding up to the end of the delimiter line
        newline = segment.find(b"\n")
        if newline < 0:
            raise WireFormatError("Truncated multipart part")
        segment = segment[newline + 1:]
        # The CRLF before the next delimiter belongs to the delimiter
        if segment.endswith(CRLF):
            segment = segment[:-2]
        elif segment.endswith(b"\n"):
            segment = segment[:-1]
        parts.append(_split_head(segment))

    raise WireFormatError(f"Multipart body is missing closing boundary '{boundary}--'")


def _split_head(data: bytes) -> Part:
    """Split a header block from its content at the first blank line."""
    if data.startswith(CRLF):
        return {}, data[2:]
    if data.startswith(b"\n"):
        return {}, data[1:]
    for separator in (CRLF + CRLF, b"\n\n"):
        index = data.find(separator)
        if index >= 0:
            return parse_headers(data[:index]), data[index + len(separator):]
    return parse_headers(data), b""


def render_http_request(request: HttpRequest) -> bytes:
    """Render an embedded HTTP request (request line, headers, blank line, body)."""
    start_line = f"{request.method} {request.url} {HTTP_VERSION}".encode("utf-8")
    return start_line + CRLF + render_headers(request.headers) + CRLF + request.body


def render_http_response(response: HttpResponse) -> bytes:
    """Render an embedded HTTP response (status line, headers, blank line, body)."""
    try:
        reason = HTTPStatus(response.status).phrase
    except ValueError:
        reason = ""
    start_line = f"{HTTP_VERSION} {response.status} {reason}".rstrip().encode("utf-8")
    return start_line + CRLF + render_headers(response.headers) + CRLF + response.body


def _split_start_line(data: bytes) -> Tuple[str, bytes]:
    data = data.lstrip(b"\r\n")
    newline = data.find(b"\n")
    if newline < 0:
        return _decode(data, "Start line").strip(), b""
    return _decode(data[:newline], "Start line").strip(), data[newline + 1:]


def parse_http_request(data: bytes) -> HttpRequest:
    """Parse an embedded HTTP request."""
    start_line, rest = _split_start_line(data)
    pieces = start_line.split(" ")
    if len(pieces) != 3 or not pieces[2].startswith("HTTP/"):
        raise WireFormatError(f"Malformed request line: '{start_line}'")
    headers, body = _split_head(rest)
    return HttpRequest(method=pieces[0].upper(), url=pieces[1], headers=headers, body=body)


def parse_http_response(data: bytes) -> HttpResponse:
    """Parse an embedded HTTP response."""
    start_line, rest = _split_start_line(data)
    pieces = start_line.split(" ", 2)
    if len(pieces) < 2 or not pieces[0].startswith("HTTP/"):
        raise WireFormatError(f"Malformed status line: '{start_line}'")
    try:
        status = int(pieces[1])
    except ValueError as e:
        raise WireFormatError(f"Malformed status code in '{start_line}'") from e
    headers, body = _split_head(rest)
    return HttpResponse(status=status, headers=headers, body=body)


def flatten_changesets(body: bytes, content_type: Optional[str]) -> List[Part]:
    """
    Return the innermost parts of a batch body.

    Parts whose own Content-Type is multipart (changesets) are expanded in
    place, so callers see one flat, ordered list of application/http parts.
    """
    flattened: List[Part] = []
    for headers, content in parse_multipart(body, boundary_from_content_type(content_type)):
        part_type = get_header(headers, "Content-Type") or ""
        if part_type.lower().startswith("multipart/"):
            flattened.extend(flatten_changesets(content, part_type))
        else:
            flattened.append((headers, content))
    return flattened
