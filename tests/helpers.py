"""Shared test helpers: settings builder, local servers and a raw HTTP client."""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass, field
from typing import Callable

from mlcproxy.config.settings import (
    AuthSettings,
    FeatureSettings,
    PathSettings,
    SecuritySettings,
    ServerSettings,
    Settings,
    TimeoutSettings,
)
from mlcproxy.proxy.http_messages import RequestBody, parse_request_head

UPSTREAM_BODY = b"hello, world!"


def build_settings(
    allowed_networks: list[str] | None = None,
    enable_auth: bool = False,
    credentials: dict[str, str] | None = None,
    **timeouts,
) -> Settings:
    """Settings for a proxy bound to an ephemeral loopback port."""
    return Settings(
        server=ServerSettings(host="127.0.0.1", port=0),
        paths=PathSettings(),
        features=FeatureSettings(),
        auth=AuthSettings(enable_auth=enable_auth, credentials=credentials or {}),
        security=SecuritySettings(allowed_networks=allowed_networks or ["127.0.0.1/32"]),
        timeouts=TimeoutSettings(**timeouts),
    )


def unused_port() -> int:
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@dataclass
class UpstreamServer:
    """Minimal HTTP origin: echoes the request body, or a fixed body if empty."""

    port: int = 0
    requests: list = field(default_factory=list)
    bodies: list = field(default_factory=list)

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            request = parse_request_head(head[:-4])
            body_reader = RequestBody(reader, request)
            body = b""
            while True:
                chunk = await body_reader.read(4096)
                if not chunk:
                    break
                body += chunk
            self.requests.append(request)
            self.bodies.append(body)

            payload = body or UPSTREAM_BODY
            writer.write(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: text/plain\r\n"
                b"X-Upstream: yes\r\n"
                + f"Content-Length: {len(payload)}\r\n".encode()
                + b"Connection: close\r\n\r\n"
                + payload
            )
            await writer.drain()
        finally:
            writer.close()


async def echo_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(4096)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        writer.close()


@dataclass
class RawResponse:
    status: int
    reason: str
    headers: dict[str, str]
    body: bytes


def parse_response(data: bytes) -> RawResponse:
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode("iso-8859-1").split("\r\n")
    _, status, reason = (lines[0].split(" ", 2) + [""])[:3]
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return RawResponse(status=int(status), reason=reason, headers=headers, body=body)


async def send_raw(port: int, payload: bytes) -> RawResponse:
    """Send raw bytes to the proxy and read the response until close."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(payload)
        await writer.drain()
        data = await asyncio.wait_for(reader.read(), timeout=5)
    finally:
        writer.close()
    return parse_response(data)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() holds; tunnel stats land after the client sees EOF."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
