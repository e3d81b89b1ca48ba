"""
HTTP/1.1 Message Handling

Reads proxy request heads and bodies from a client stream and writes
responses back. The gateway owns the raw client connection, so CONNECT
tunnels can take over the same streams once the head has been read.
"""

import asyncio
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from mlcproxy.proxy.exceptions import MalformedRequest

HEAD_TERMINATOR = b"\r\n\r\n"
CHUNK_SIZE = 64 * 1024

# Headers that describe the framing of one hop and must not be copied as-is
FRAMING_HEADERS = {"transfer-encoding", "connection", "keep-alive"}

Headers = List[Tuple[str, str]]


def reason_phrase(status: int) -> str:
    """Standard reason phrase for a status code."""
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def get_header(headers: Headers, name: str) -> Optional[str]:
    """Return the first value of a header, matched case-insensitively."""
    lname = name.lower()
    for key, value in headers:
        if key.lower() == lname:
            return value
    return None


@dataclass
class ProxyRequest:
    """
    A parsed proxy request head.

    Attributes:
        method: Upper-case request method
        target: Raw request target (absolute URL, origin path or authority)
        version: HTTP version string, e.g. "HTTP/1.1"
        headers: Header pairs in wire order, names as received
        peer: Remote address of the client connection ("ip:port" / "[v6]:port")
    """

    method: str
    target: str
    version: str = "HTTP/1.1"
    headers: Headers = field(default_factory=list)
    peer: str = ""

    def header(self, name: str) -> Optional[str]:
        return get_header(self.headers, name)

    @property
    def is_absolute(self) -> bool:
        return self.target.startswith(("http://", "https://"))

    @property
    def host(self) -> str:
        """Target host as the client addressed it, port included."""
        if self.method == "CONNECT":
            return self.target
        if self.is_absolute:
            netloc = urlsplit(self.target).netloc
            if netloc:
                return netloc
        return self.header("Host") or ""

    @property
    def hostname(self) -> str:
        """Target host without port."""
        host = self.host
        if host.startswith("["):
            return host[1:host.find("]")] if "]" in host else host.strip("[]")
        return host.split(":", 1)[0]

    @property
    def path(self) -> str:
        """URL path of the request target; empty for CONNECT."""
        if self.method == "CONNECT":
            return ""
        if self.is_absolute:
            return urlsplit(self.target).path or "/"
        return urlsplit(self.target).path

    @property
    def url(self) -> str:
        """Absolute upstream URL; host-relative targets are qualified via Host."""
        if self.is_absolute:
            return self.target
        return f"http://{self.header('Host') or ''}{self.target}"

    @property
    def content_length(self) -> Optional[int]:
        value = self.header("Content-Length")
        if value is None:
            return None
        try:
            length = int(value.strip())
        except ValueError as e:
            raise MalformedRequest(f"Invalid Content-Length: {value}") from e
        if length < 0:
            raise MalformedRequest(f"Invalid Content-Length: {value}")
        return length

    @property
    def is_chunked(self) -> bool:
        value = self.header("Transfer-Encoding")
        return bool(value) and value.lower().split(",")[-1].strip() == "chunked"


def format_peer(peername) -> str:
    """Format a socket peername tuple as "ip:port" or "[ipv6]:port"."""
    if not peername:
        return ""
    if isinstance(peername, (tuple, list)):
        host, port = peername[0], peername[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(peername)


def parse_request_head(data: bytes, peer: str = "") -> ProxyRequest:
    """
    Parse a request line and header block.

    Raises:
        MalformedRequest: If the head is not valid HTTP/1.x
    """
    try:
        text = data.decode("iso-8859-1")
    except UnicodeDecodeError as e:
        raise MalformedRequest("Undecodable request head") from e

    lines = text.split("\r\n")
    # Tolerate leading empty lines before the request line (RFC 9112 2.2)
    while lines and not lines[0]:
        lines.pop(0)
    if not lines:
        raise MalformedRequest("Empty request")

    parts = lines[0].split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise MalformedRequest(f"Invalid request line: {lines[0]!r}")
    method, target, version = parts

    headers: Headers = []
    for line in lines[1:]:
        if not line:
            continue
        if line[0] in " \t":
            raise MalformedRequest("Obsolete header line folding is not supported")
        name, sep, value = line.partition(":")
        if not sep or not name or name != name.strip():
            raise MalformedRequest(f"Invalid header line: {line!r}")
        headers.append((name, value.strip()))

    return ProxyRequest(
        method=method.upper(),
        target=target,
        version=version,
        headers=headers,
        peer=peer,
    )


async def read_request(reader: asyncio.StreamReader, peer: str = "") -> Optional[ProxyRequest]:
    """
    Read and parse one request head from a client.

    Returns:
        The parsed request, or None if the client closed before sending one

    Raises:
        MalformedRequest: If the head is invalid or too large
    """
    try:
        data = await reader.readuntil(HEAD_TERMINATOR)
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            return None
        raise MalformedRequest("Connection closed inside request head") from e
    except asyncio.LimitOverrunError as e:
        raise MalformedRequest("Request head too large") from e

    return parse_request_head(data[: -len(HEAD_TERMINATOR)], peer=peer)


class RequestBody:
    """
    Reader over a request body, decoding its framing.

    Content-Length bodies are read up to the declared length; chunked
    bodies are de-chunked; requests with neither have no body.
    """

    def __init__(self, reader: asyncio.StreamReader, request: ProxyRequest):
        self._reader = reader
        self._chunked = request.is_chunked
        self._remaining = 0 if self._chunked else (request.content_length or 0)
        self._done = not self._chunked and self._remaining == 0

    async def read(self, n: int = -1) -> bytes:
        if self._done:
            return b""
        if n is None or n < 0:
            n = CHUNK_SIZE

        if self._chunked:
            if self._remaining == 0:
                await self._start_chunk()
                if self._done:
                    return b""
            data = await self._reader.read(min(n, self._remaining))
            if not data:
                raise MalformedRequest("Connection closed inside chunked body")
            self._remaining -= len(data)
            if self._remaining == 0:
                await self._expect_crlf()
            return data

        data = await self._reader.read(min(n, self._remaining))
        if not data:
            raise MalformedRequest("Connection closed before end of request body")
        self._remaining -= len(data)
        if self._remaining == 0:
            self._done = True
        return data

    async def _start_chunk(self) -> None:
        line = await self._readline()
        size_text = line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError as e:
            raise MalformedRequest(f"Invalid chunk size: {size_text!r}") from e
        if size == 0:
            # Discard trailers up to the terminating empty line
            while await self._readline():
                pass
            self._done = True
            return
        self._remaining = size

    async def _expect_crlf(self) -> None:
        if await self._readline():
            raise MalformedRequest("Missing CRLF after chunk data")

    async def _readline(self) -> bytes:
        try:
            line = await self._reader.readuntil(b"\r\n")
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
            raise MalformedRequest("Invalid chunked body") from e
        return line[:-2]


def serialize_head(status: int, headers: Iterable[Tuple[str, str]], reason: Optional[str] = None) -> bytes:
    """Serialize a status line and header block."""
    if reason is None:
        reason = reason_phrase(status)
    lines = [f"HTTP/1.1 {status} {reason}".rstrip()]
    lines.extend(f"{name}: {value}" for name, value in headers)
    return ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1", errors="replace")


async def write_response(
    writer: asyncio.StreamWriter,
    status: int,
    body: bytes = b"",
    headers: Optional[Headers] = None,
    content_type: str = "text/plain; charset=utf-8",
) -> None:
    """Write a complete, connection-closing response with a small body."""
    response_headers: Headers = [
        ("Content-Type", content_type),
        ("Content-Length", str(len(body))),
    ]
    if content_type.startswith("text/plain"):
        response_headers.append(("X-Content-Type-Options", "nosniff"))
    response_headers.extend(headers or [])
    response_headers.append(("Connection", "close"))

    writer.write(serialize_head(status, response_headers) + body)
    await writer.drain()


async def write_error(
    writer: asyncio.StreamWriter,
    status: int,
    message: str,
    headers: Optional[Headers] = None,
) -> None:
    """Write a plain-text error response."""
    await write_response(writer, status, (message + "\n").encode("utf-8"), headers=headers)
