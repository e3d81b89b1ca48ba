import asyncio

import pytest

from mlcproxy.proxy.exceptions import HijackUnsupported, UpstreamUnreachable
from mlcproxy.proxy.tunnel import TunnelSession, take_over_transport
from tests.helpers import unused_port


class _ClosingTransport:
    def is_closing(self) -> bool:
        return True


class _FakeWriter:
    def __init__(self, transport):
        self.transport = transport


def test_take_over_rejects_closed_transport():
    with pytest.raises(HijackUnsupported):
        take_over_transport(_FakeWriter(_ClosingTransport()))
    with pytest.raises(HijackUnsupported):
        take_over_transport(_FakeWriter(None))


@pytest.mark.asyncio
async def test_open_fails_for_closed_port():
    session = TunnelSession(asyncio.StreamReader(), None, host="127.0.0.1", port=unused_port())

    with pytest.raises(UpstreamUnreachable):
        await session.open()
    assert session.bytes_out == 0


@pytest.mark.asyncio
async def test_session_moves_bytes_between_streams(echo_port):
    server_side = {}

    async def on_client(reader, writer):
        server_side["reader"], server_side["writer"] = reader, writer
        server_side["ready"].set()

    server_side["ready"] = asyncio.Event()
    server = await asyncio.start_server(on_client, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    client_reader, client_writer = await asyncio.open_connection("127.0.0.1", port)
    await server_side["ready"].wait()

    session = TunnelSession(
        server_side["reader"],
        server_side["writer"],
        host="127.0.0.1",
        port=echo_port,
    )
    await session.open()
    run = asyncio.create_task(session.run())

    client_writer.write(b"ping" * 100)
    await client_writer.drain()
    assert await asyncio.wait_for(client_reader.readexactly(400), timeout=5) == b"ping" * 100

    client_writer.write_eof()
    bytes_in, bytes_out = await asyncio.wait_for(run, timeout=5)

    assert (bytes_in, bytes_out) == (400, 400)
    assert session.upstream_writer is None

    client_writer.close()
    server_side["writer"].close()
    server.close()
    await server.wait_closed()
