import asyncio

import pytest

from mlcproxy.proxy.exceptions import MalformedRequest
from mlcproxy.proxy.http_messages import (
    ProxyRequest,
    RequestBody,
    format_peer,
    parse_request_head,
    read_request,
    serialize_head,
)


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def _read_all(body: RequestBody) -> bytes:
    data = b""
    while True:
        chunk = await body.read(3)
        if not chunk:
            return data
        data += chunk


def test_parse_absolute_form_request():
    request = parse_request_head(
        b"get http://example.com:8080/path/x?q=1 HTTP/1.1\r\nHost: example.com:8080\r\nX-A: 1\r\nX-A: 2",
        peer="127.0.0.1:5000",
    )

    assert request.method == "GET"
    assert request.host == "example.com:8080"
    assert request.hostname == "example.com"
    assert request.path == "/path/x"
    assert request.url == "http://example.com:8080/path/x?q=1"
    assert request.headers == [("Host", "example.com:8080"), ("X-A", "1"), ("X-A", "2")]
    assert request.peer == "127.0.0.1:5000"


def test_connect_request_has_empty_path():
    request = parse_request_head(b"CONNECT example.com:443 HTTP/1.1\r\nHost: example.com:443")

    assert request.host == "example.com:443"
    assert request.path == ""


def test_origin_form_is_qualified_with_host():
    request = ProxyRequest(method="GET", target="/a?b=c", headers=[("host", "origin.test")])

    assert request.url == "http://origin.test/a?b=c"
    assert request.host == "origin.test"


@pytest.mark.parametrize(
    "head",
    [
        b"GET /\r\nHost: x",
        b"GET / FTP/1.0",
        b"GET / HTTP/1.1\r\nNoColonHere",
        b"GET / HTTP/1.1\r\nBad Name : v",
        b"GET / HTTP/1.1\r\nA: 1\r\n folded",
    ],
)
def test_malformed_heads_raise(head):
    with pytest.raises(MalformedRequest):
        parse_request_head(head)


def test_invalid_content_length_raises():
    request = ProxyRequest(method="POST", target="/", headers=[("Content-Length", "abc")])

    with pytest.raises(MalformedRequest):
        request.content_length


@pytest.mark.asyncio
async def test_read_request_returns_none_on_clean_close():
    assert await read_request(_reader(b"")) is None


@pytest.mark.asyncio
async def test_read_request_rejects_truncated_head():
    with pytest.raises(MalformedRequest):
        await read_request(_reader(b"GET / HTTP/1.1\r\nHost: x\r\n"))


@pytest.mark.asyncio
async def test_read_request_leaves_body_in_stream():
    reader = _reader(b"POST /x HTTP/1.1\r\nContent-Length: 5\r\n\r\nhello")

    request = await read_request(reader)

    assert request.content_length == 5
    assert await _read_all(RequestBody(reader, request)) == b"hello"


@pytest.mark.asyncio
async def test_chunked_body_is_decoded_and_trailers_dropped():
    request = ProxyRequest(method="POST", target="/", headers=[("Transfer-Encoding", "chunked")])
    reader = _reader(b"5;ext=1\r\nhello\r\n6\r\n world\r\n0\r\nX-Trailer: t\r\n\r\n")

    assert await _read_all(RequestBody(reader, request)) == b"hello world"


@pytest.mark.asyncio
async def test_truncated_chunked_body_raises():
    request = ProxyRequest(method="POST", target="/", headers=[("Transfer-Encoding", "chunked")])
    body = RequestBody(_reader(b"a\r\nshort"), request)

    with pytest.raises(MalformedRequest):
        await _read_all(body)


@pytest.mark.asyncio
async def test_request_without_body_reads_empty():
    body = RequestBody(_reader(b"ignored"), ProxyRequest(method="GET", target="/"))

    assert await body.read() == b""


def test_serialize_head():
    head = serialize_head(404, [("Content-Length", "0")])

    assert head == b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\n\r\n"


def test_format_peer():
    assert format_peer(("127.0.0.1", 5000)) == "127.0.0.1:5000"
    assert format_peer(("::1", 5000, 0, 0)) == "[::1]:5000"
    assert format_peer(None) == ""
