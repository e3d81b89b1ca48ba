"""
CONNECT Tunnel

Bidirectional byte pipe between a client and an upstream host. The proxy
never inspects tunneled bytes; it only counts them.
"""

import asyncio
from typing import Optional, Tuple
import structlog

from mlcproxy.config.settings import TunnelJoin
from mlcproxy.proxy.exceptions import HijackUnsupported, UpstreamUnreachable
from mlcproxy.proxy.traffic_counter import TrafficCounter

logger = structlog.get_logger(__name__)

TUNNEL_CHUNK_SIZE = 64 * 1024
CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection established\r\n\r\n"
GATEWAY_TIMEOUT = b"HTTP/1.1 504 Gateway Timeout\r\n\r\n"


def take_over_transport(writer: asyncio.StreamWriter) -> None:
    """
    Make sure the raw client transport can carry a tunnel.

    Raises:
        HijackUnsupported: If the transport is gone or already closing
    """
    transport = writer.transport
    if transport is None or transport.is_closing():
        raise HijackUnsupported("Client transport cannot be taken over for tunneling")


async def pump(
    source: TrafficCounter,
    writer: asyncio.StreamWriter,
    direction: str,
    idle_timeout: Optional[float] = None,
) -> None:
    """
    Copy bytes from source to writer until EOF, then half-close writer.

    Network errors end this direction quietly; the byte count stays in
    the source counter.
    """
    try:
        while True:
            if idle_timeout:
                data = await asyncio.wait_for(source.read(TUNNEL_CHUNK_SIZE), idle_timeout)
            else:
                data = await source.read(TUNNEL_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except asyncio.TimeoutError:
        logger.debug("tunnel_direction_idle_timeout", direction=direction)
    except (ConnectionError, OSError) as e:
        logger.debug("tunnel_direction_error", direction=direction, error=str(e))

    try:
        if writer.can_write_eof() and not writer.is_closing():
            writer.write_eof()
    except (ConnectionError, OSError):
        pass


class TunnelSession:
    """
    One CONNECT tunnel: the client streams, the upstream streams and a
    Traffic Counter per direction.

    Exists only for the duration of the tunnel; close() tears down the
    upstream side, the gateway closes the client side.
    """

    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        host: str,
        port: int,
        connect_timeout: float = 10.0,
        idle_timeout: Optional[float] = None,
        join: TunnelJoin = TunnelJoin.BOTH,
    ):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.join = join

        self.client_writer = client_writer
        self.client_counter = TrafficCounter(client_reader)
        self.upstream_counter: Optional[TrafficCounter] = None
        self.upstream_writer: Optional[asyncio.StreamWriter] = None

    @property
    def bytes_in(self) -> int:
        """Bytes sent by the client towards the upstream."""
        return self.client_counter.bytes_read

    @property
    def bytes_out(self) -> int:
        """Bytes sent by the upstream towards the client."""
        return self.upstream_counter.bytes_read if self.upstream_counter else 0

    async def open(self) -> None:
        """
        Dial the upstream host.

        Raises:
            UpstreamUnreachable: On connect failure or timeout
        """
        try:
            upstream_reader, self.upstream_writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnreachable(
                f"Timed out connecting to {self.host}:{self.port}"
            ) from e
        except OSError as e:
            raise UpstreamUnreachable(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        self.upstream_counter = TrafficCounter(upstream_reader)

    async def run(self) -> Tuple[int, int]:
        """
        Relay bytes both ways until the tunnel ends.

        Returns:
            (bytes_in, bytes_out) moved through the tunnel
        """
        if self.upstream_writer is None:
            raise RuntimeError("Tunnel is not open")

        upstream = asyncio.create_task(
            pump(self.client_counter, self.upstream_writer, "client_to_upstream", self.idle_timeout)
        )
        downstream = asyncio.create_task(
            pump(self.upstream_counter, self.client_writer, "upstream_to_client", self.idle_timeout)
        )

        try:
            if self.join == TunnelJoin.FIRST:
                done, pending = await asyncio.wait(
                    {upstream, downstream},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            else:
                await asyncio.gather(upstream, downstream)
        finally:
            for task in (upstream, downstream):
                if not task.done():
                    task.cancel()
            await self.close()

        return self.bytes_in, self.bytes_out

    async def close(self) -> None:
        """Close the upstream connection."""
        if self.upstream_writer is None:
            return
        writer, self.upstream_writer = self.upstream_writer, None
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass
