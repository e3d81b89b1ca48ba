"""
Upstream Relay

Forwards plain HTTP requests to their upstream and streams the response
back to the client, counting body bytes in both directions.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional
import structlog
import httpx

from mlcproxy.proxy.exceptions import ProxyError, UpstreamProtocolError
from mlcproxy.proxy.http_messages import (
    FRAMING_HEADERS,
    Headers,
    ProxyRequest,
    serialize_head,
)
from mlcproxy.proxy.traffic_counter import TrafficCounter

logger = structlog.get_logger(__name__)


@dataclass
class RelayResult:
    """Outcome of a relayed request."""

    status_code: int
    bytes_in: int
    bytes_out: int
    complete: bool = True


class UpstreamRelay:
    """
    Relays requests through an httpx.AsyncClient.

    Features:
    - Request headers copied verbatim, no client default headers added
    - Streaming request and response bodies
    - No retries and no redirect following
    - Optional ASGI transport, used to serve the statistics app in-process
    """

    def __init__(
        self,
        connect_timeout: Optional[float] = 10.0,
        relay_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connect_timeout = connect_timeout
        self.relay_timeout = relay_timeout
        self.transport = transport

        # HTTP client
        self._client: Optional[httpx.AsyncClient] = None

        # Statistics
        self._total_relayed = 0
        self._failed_relays = 0

    async def initialize(self) -> None:
        """Initialize the HTTP client."""
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=self.connect_timeout,
                read=self.relay_timeout,
                write=self.relay_timeout,
                pool=None,
            ),
            limits=httpx.Limits(
                max_connections=100,
                max_keepalive_connections=20,
            ),
            follow_redirects=False,
            trust_env=False,
            transport=self.transport,
        )
        # Forward exactly what the client sent
        self._client.headers.clear()
        logger.debug("relay_client_initialized", in_process=self.transport is not None)

    async def shutdown(self) -> None:
        """Shutdown the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def relay(
        self,
        request: ProxyRequest,
        body: TrafficCounter,
        writer: asyncio.StreamWriter,
        has_body: bool = True,
    ) -> RelayResult:
        """
        Relay one request and stream the response to the client.

        Args:
            request: Parsed client request
            body: Counter wrapping the decoded request body
            writer: Client stream to write the response to
            has_body: Whether the request carries a body

        Returns:
            RelayResult with the upstream status and both byte counts

        Raises:
            UpstreamProtocolError: If the request could not be built or
                sent, or no response head arrived. Nothing has been written
                to the client in that case.
        """
        if not self._client:
            await self.initialize()

        self._total_relayed += 1

        try:
            upstream_request = self._client.build_request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                content=body if has_body else None,
            )
            response = await self._client.send(upstream_request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL, ProxyError, ValueError) as e:
            self._failed_relays += 1
            logger.warning(
                "upstream_request_failed",
                method=request.method,
                url=request.url,
                error=str(e) or type(e).__name__,
            )
            raise UpstreamProtocolError(str(e) or type(e).__name__) from e

        response_body = TrafficCounter(response.aiter_raw())
        complete = True
        try:
            writer.write(
                serialize_head(
                    response.status_code,
                    self._response_headers(response),
                    reason=response.reason_phrase,
                )
            )
            await writer.drain()

            async for chunk in response_body:
                writer.write(chunk)
                await writer.drain()
        except (httpx.HTTPError, ConnectionError, OSError) as e:
            complete = False
            logger.warning(
                "error_copying_response",
                url=request.url,
                error=str(e) or type(e).__name__,
                bytes_copied=response_body.bytes_read,
            )
        finally:
            await response.aclose()

        return RelayResult(
            status_code=response.status_code,
            bytes_in=body.bytes_read,
            bytes_out=response_body.bytes_read,
            complete=complete,
        )

    @staticmethod
    def _response_headers(response: httpx.Response) -> Headers:
        """Upstream headers as received, minus per-hop framing."""
        headers: Headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in response.headers.raw
            if name.decode("latin-1").lower() not in FRAMING_HEADERS
        ]
        # The body is delimited by Content-Length or by closing the connection
        headers.append(("Connection", "close"))
        return headers

    def get_stats(self) -> dict:
        """Get relay statistics."""
        return {
            "total_relayed": self._total_relayed,
            "failed_relays": self._failed_relays,
        }
