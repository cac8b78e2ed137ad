"""
Unit tests for multipart framing and embedded HTTP messages.
"""

import pytest

from tablebatch.table.wire import (
    HttpRequest,
    HttpResponse,
    WireFormatError,
    boundary_from_content_type,
    flatten_changesets,
    get_header,
    parse_http_request,
    parse_http_response,
    parse_multipart,
    render_http_request,
    render_http_response,
    render_multipart,
)


class TestBoundary:

    def test_plain_boundary(self):
        assert boundary_from_content_type("multipart/mixed; boundary=batch_abc") == "batch_abc"

    def test_quoted_boundary(self):
        assert boundary_from_content_type('multipart/mixed; boundary="batch_abc"') == "batch_abc"

    def test_boundary_among_other_params(self):
        content_type = "multipart/mixed; charset=utf-8; Boundary=changeset_1"
        assert boundary_from_content_type(content_type) == "changeset_1"

    @pytest.mark.parametrize("content_type", [
        None,
        "",
        "application/json",
        "multipart/mixed",
        "multipart/mixed; charset=utf-8",
    ])
    def test_invalid_content_type(self, content_type):
        with pytest.raises(WireFormatError):
            boundary_from_content_type(content_type)


class TestMultipart:

    def test_render_layout(self):
        body = render_multipart("b1", [({"Content-Type": "text/plain"}, b"hello")])

        assert body == (
            b"--b1\r\n"
            b"Content-Type: text/plain\r\n"
            b"\r\n"
            b"hello\r\n"
            b"--b1--\r\n"
        )

    def test_parse_rendered_parts(self):
        parts = [
            ({"Content-Type": "application/http"}, b"first"),
            ({"Content-Type": "application/http", "Content-ID": "2"}, b"second\r\nline"),
        ]
        body = render_multipart("b1", parts)

        assert parse_multipart(body, "b1") == parts

    def test_parse_tolerates_preamble_and_bare_newlines(self):
        body = b"preamble\n--b1\nX-A: 1\n\nbody\n--b1--\n"

        assert parse_multipart(body, "b1") == [({"X-A": "1"}, b"body")]

    def test_parse_part_without_headers(self):
        body = b"--b1\r\n\r\nonly body\r\n--b1--\r\n"

        assert parse_multipart(body, "b1") == [({}, b"only body")]

    def test_missing_boundary(self):
        with pytest.raises(WireFormatError) as exc_info:
            parse_multipart(b"no parts here", "b1")
        assert "not found" in str(exc_info.value)

    def test_missing_close_delimiter(self):
        with pytest.raises(WireFormatError) as exc_info:
            parse_multipart(b"--b1\r\nX-A: 1\r\n\r\nbody\r\n", "b1")
        assert "closing boundary" in str(exc_info.value)

    def test_malformed_header_line(self):
        with pytest.raises(WireFormatError):
            parse_multipart(b"--b1\r\nnot a header\r\n\r\nbody\r\n--b1--\r\n", "b1")

    def test_header_not_utf8(self):
        with pytest.raises(WireFormatError) as exc_info:
            parse_multipart(b"--b1\r\nX-A: \xff\xfe\r\n\r\nbody\r\n--b1--\r\n", "b1")
        assert "not valid UTF-8" in str(exc_info.value)

    def test_non_ascii_boundary(self):
        with pytest.raises(WireFormatError):
            parse_multipart(b"--b1--\r\n", "b\u00e9")
        with pytest.raises(WireFormatError):
            render_multipart("b\u00e9", [])

    def test_flatten_changesets(self):
        changeset = render_multipart("cs", [
            ({"Content-Type": "application/http"}, b"one"),
            ({"Content-Type": "application/http"}, b"two"),
        ])
        body = render_multipart("batch", [
            ({"Content-Type": "multipart/mixed; boundary=cs"}, changeset),
        ])

        parts = flatten_changesets(body, "multipart/mixed; boundary=batch")

        assert [content for _, content in parts] == [b"one", b"two"]

    def test_flatten_keeps_top_level_parts(self):
        body = render_multipart("batch", [({"Content-Type": "application/http"}, b"one")])

        parts = flatten_changesets(body, "multipart/mixed; boundary=batch")

        assert parts == [({"Content-Type": "application/http"}, b"one")]


class TestHttpMessages:

    def test_render_request(self):
        request = HttpRequest(
            method="PUT",
            url="http://host/t(PartitionKey='p',RowKey='r')",
            headers={"If-Match": "*"},
            body=b"{}",
        )

        assert render_http_request(request) == (
            b"PUT http://host/t(PartitionKey='p',RowKey='r') HTTP/1.1\r\n"
            b"If-Match: *\r\n"
            b"\r\n"
            b"{}"
        )

    def test_parse_rendered_request(self):
        request = HttpRequest(method="MERGE", url="http://host/t", headers={"Content-ID": "1"}, body=b'{"A":1}')

        assert parse_http_request(render_http_request(request)) == request

    def test_parse_request_lowercase_method(self):
        request = parse_http_request(b"delete http://host/t HTTP/1.1\r\n\r\n")

        assert request.method == "DELETE"
        assert request.headers == {}
        assert request.body == b""

    def test_malformed_request_line(self):
        with pytest.raises(WireFormatError):
            parse_http_request(b"GARBAGE\r\n\r\n")

    def test_render_response_has_reason_phrase(self):
        rendered = render_http_response(HttpResponse(status=204, headers={"ETag": "W/\"1\""}))

        assert rendered.startswith(b"HTTP/1.1 204 No Content\r\n")
        assert b"ETag: W/\"1\"\r\n" in rendered

    def test_render_response_unknown_status(self):
        rendered = render_http_response(HttpResponse(status=299))

        assert rendered.startswith(b"HTTP/1.1 299\r\n")

    def test_parse_response(self):
        data = (
            b"HTTP/1.1 404 Not Found\r\n"
            b"Content-ID: 1\r\n"
            b"Content-Type: application/json\r\n"
            b"\r\n"
            b'{"odata.error": {}}'
        )

        response = parse_http_response(data)

        assert response.status == 404
        assert not response.ok
        assert response.header("content-id") == "1"
        assert response.text == '{"odata.error": {}}'

    def test_parse_response_without_headers(self):
        response = parse_http_response(b"HTTP/1.1 204 No Content\r\n\r\n")

        assert response.status == 204
        assert response.ok
        assert response.headers == {}
        assert response.body == b""

    @pytest.mark.parametrize("data", [
        b"204 No Content\r\n\r\n",
        b"HTTP/1.1 abc Bad\r\n\r\n",
        b"HTTP/1.1\r\n\r\n",
        b"HTTP/1.1 204 \xff\xfe\r\n\r\n",
    ])
    def test_malformed_status_line(self, data):
        with pytest.raises(WireFormatError):
            parse_http_response(data)


def test_get_header_is_case_insensitive():
    headers = {"ETag": "W/\"1\""}

    assert get_header(headers, "etag") == "W/\"1\""
    assert get_header(headers, "If-Match") is None
