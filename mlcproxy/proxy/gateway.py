"""
Forward Proxy Gateway

Dispatch engine for inbound proxy connections: classifies each request,
applies access control, relays plain HTTP, tunnels CONNECT traffic and
reports every outcome to the statistics aggregator.
"""

import asyncio
from typing import Any, Dict, Optional
import structlog
import httpx

from mlcproxy.config.settings import Settings
from mlcproxy.domain.value_objects.ip_address import strip_port
from mlcproxy.proxy.access_control import AccessController, AccessPolicy
from mlcproxy.proxy.classifier import (
    ClassifiedRequest,
    ConnectRequest,
    DevtoolsProbe,
    StatsRequest,
    classify,
)
from mlcproxy.proxy.exceptions import (
    AccessDenied,
    HijackUnsupported,
    MalformedRequest,
    ProxyError,
    UpstreamProtocolError,
    UpstreamUnreachable,
)
from mlcproxy.proxy.http_messages import (
    ProxyRequest,
    RequestBody,
    format_peer,
    read_request,
    write_error,
    write_response,
)
from mlcproxy.proxy.relay import UpstreamRelay
from mlcproxy.proxy.traffic_counter import TrafficCounter
from mlcproxy.proxy.tunnel import (
    CONNECTION_ESTABLISHED,
    GATEWAY_TIMEOUT,
    TunnelSession,
    take_over_transport,
)
from mlcproxy.stats.aggregator import StatsAggregator
from mlcproxy.stats.app import create_stats_app

logger = structlog.get_logger(__name__)

DEVTOOLS_RESPONSE = b"{}"
CONTINUE_RESPONSE = b"HTTP/1.1 100 Continue\r\n\r\n"


class ProxyGateway:
    """
    MLCProxy forward proxy gateway.

    For every inbound connection:
    1. Reads the request head
    2. Serves statistics requests directly (no access control)
    3. Checks the client IP against the allowed networks, then credentials
    4. Tunnels CONNECT requests or relays plain HTTP requests
    5. Records exactly one statistics entry per outcome after step 2

    One request is handled per connection; responses carry
    ``Connection: close``.
    """

    def __init__(
        self,
        settings: Settings,
        aggregator: StatsAggregator,
        policy: Optional[AccessPolicy] = None,
    ):
        self.settings = settings
        self.aggregator = aggregator
        self.access = AccessController(policy or AccessPolicy.from_settings(settings))

        timeouts = settings.timeouts
        self.relay = UpstreamRelay(
            connect_timeout=timeouts.connect_timeout,
            relay_timeout=timeouts.relay_timeout,
        )

        # Statistics pages are served in-process through an ASGI transport
        self.stats_app = create_stats_app(aggregator, settings)
        self.stats_relay = UpstreamRelay(
            connect_timeout=None,
            transport=httpx.ASGITransport(app=self.stats_app),
        )

        self._stats = {
            "connections": 0,
            "denied_requests": 0,
            "auth_failures": 0,
            "tunnels": 0,
            "relayed_requests": 0,
            "failed_requests": 0,
            "truncated_responses": 0,
        }

        if self.access.policy.allows_everyone:
            logger.warning("allow_list_empty_all_clients_allowed")

    async def initialize(self) -> None:
        """Create the HTTP clients."""
        await self.relay.initialize()
        await self.stats_relay.initialize()

    async def shutdown(self) -> None:
        """Close the HTTP clients."""
        await self.relay.shutdown()
        await self.stats_relay.shutdown()

    async def handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one inbound client connection (asyncio.start_server callback)."""
        self._stats["connections"] += 1
        peer = format_peer(writer.get_extra_info("peername"))

        try:
            try:
                request = await read_request(reader, peer=peer)
            except MalformedRequest as e:
                logger.info("malformed_request", peer=peer, error=e.message)
                await write_error(writer, e.status_code, e.message)
                return

            if request is None:
                return

            await self.dispatch(request, reader, writer)

        except (ConnectionError, OSError) as e:
            logger.debug("client_connection_error", peer=peer, error=str(e))
        except Exception as e:
            logger.error("connection_handler_failed", peer=peer, error=str(e), exc_info=True)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def dispatch(
        self,
        request: ProxyRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Classify a request, gate it and run the matching branch."""
        invalid_target: Optional[ValueError] = None
        try:
            classified = classify(
                request,
                stats_path=self.settings.paths.stats_path,
                stats_host=self.settings.features.stats_host,
            )
        except ValueError as e:
            classified, invalid_target = None, e

        if isinstance(classified, StatsRequest):
            await self._handle_stats(request, reader, writer)
            return

        client_ip = self.get_client_ip(request)

        try:
            self._gate(request, client_ip)
        except ProxyError as e:
            await write_error(writer, e.status_code, e.message, headers=e.headers)
            self._record(request, client_ip, e.status_code, 0, 0)
            return

        if invalid_target is not None:
            logger.info("invalid_connect_target", target=request.target, error=str(invalid_target))
            await write_error(writer, 400, f"Invalid CONNECT target: {request.target}")
            self._record(request, client_ip, 400, 0, 0)
            return

        logger.info(
            "proxy_request",
            method=request.method,
            host=request.host,
            url=request.target,
            client_ip=client_ip,
        )

        await self._handle_proxy(classified, reader, writer, client_ip)

    async def _handle_proxy(
        self,
        classified: ClassifiedRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client_ip: str,
    ) -> None:
        request = classified.request

        if isinstance(classified, ConnectRequest):
            await self._handle_connect(classified, reader, writer, client_ip)
        elif isinstance(classified, DevtoolsProbe):
            await write_response(
                writer,
                200,
                DEVTOOLS_RESPONSE,
                content_type="application/json",
            )
            self._record(request, client_ip, 200, len(DEVTOOLS_RESPONSE), len(DEVTOOLS_RESPONSE))
        else:
            await self._handle_plain(request, reader, writer, client_ip)

    def _gate(self, request: ProxyRequest, client_ip: str) -> None:
        """
        Apply access control.

        Raises:
            AccessDenied: Client IP outside the allowed networks
            AuthRequired: Auth enabled and credentials missing or wrong
        """
        if not self.access.is_ip_allowed(client_ip):
            self._stats["denied_requests"] += 1
            networks = ", ".join(self.access.policy.network_list)
            logger.warning(
                "access_denied",
                client_ip=client_ip,
                allowed_networks=self.access.policy.network_list,
            )
            raise AccessDenied(
                f"Access denied - IP {client_ip} not in allowed networks ({networks})"
            )

        if self.access.policy.auth_enabled and not self.access.check_auth(request.headers):
            self._stats["auth_failures"] += 1
            logger.warning("auth_failed", client_ip=client_ip)
            raise self.access.require_auth()

    async def _handle_connect(
        self,
        target: ConnectRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client_ip: str,
    ) -> None:
        """Establish an HTTPS tunnel and record its byte totals."""
        request = target.request
        logger.info("https_connect_request", target=target.address)

        try:
            take_over_transport(writer)
        except HijackUnsupported as e:
            logger.error("hijack_failed", target=target.address, error=e.message)
            await write_error(writer, e.status_code, e.message)
            return

        timeouts = self.settings.timeouts
        session = TunnelSession(
            reader,
            writer,
            host=target.host,
            port=target.port,
            connect_timeout=timeouts.connect_timeout,
            idle_timeout=timeouts.tunnel_idle_timeout,
            join=timeouts.tunnel_join,
        )

        try:
            await session.open()
        except UpstreamUnreachable as e:
            logger.warning("upstream_dial_failed", target=target.address, error=e.message)
            writer.write(GATEWAY_TIMEOUT)
            await writer.drain()
            return

        try:
            writer.write(CONNECTION_ESTABLISHED)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.warning("connect_response_failed", target=target.address, error=str(e))
            await session.close()
            return

        self._stats["tunnels"] += 1
        bytes_in, bytes_out = await session.run()

        logger.info(
            "tunnel_closed",
            target=target.address,
            client_ip=client_ip,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
        )
        self._record(request, client_ip, 200, bytes_in, bytes_out)

    async def _handle_plain(
        self,
        request: ProxyRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client_ip: str,
    ) -> None:
        """Relay a plain HTTP request and record the result."""
        try:
            body, has_body = await self._open_body(request, reader, writer)
        except MalformedRequest as e:
            await write_error(writer, e.status_code, e.message)
            self._record(request, client_ip, e.status_code, 0, 0)
            return

        try:
            result = await self.relay.relay(request, body, writer, has_body=has_body)
        except UpstreamProtocolError as e:
            self._stats["failed_requests"] += 1
            await write_error(writer, e.status_code, e.message)
            self._record(request, client_ip, e.status_code, 0, 0)
            return

        self._stats["relayed_requests"] += 1
        if not result.complete:
            self._stats["truncated_responses"] += 1
            logger.warning(
                "relay_truncated",
                url=request.target,
                client_ip=client_ip,
                status=result.status_code,
                bytes_out=result.bytes_out,
            )
        self._record(request, client_ip, result.status_code, result.bytes_in, result.bytes_out)

    async def _handle_stats(
        self,
        request: ProxyRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve the statistics pages; not recorded in the statistics."""
        if not request.is_absolute and not request.header("Host"):
            request.headers.append(("Host", "localhost"))

        try:
            body, has_body = await self._open_body(request, reader, writer)
            await self.stats_relay.relay(request, body, writer, has_body=has_body)
        except ProxyError as e:
            logger.warning("stats_request_failed", path=request.path, error=e.message)
            await write_error(writer, e.status_code, e.message)

    async def _open_body(
        self,
        request: ProxyRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> tuple[TrafficCounter, bool]:
        """
        Wrap the request body in a TrafficCounter.

        Answers ``Expect: 100-continue`` locally so the client starts
        sending the body the relay is about to read.

        Raises:
            MalformedRequest: Invalid body framing headers
        """
        has_body = request.is_chunked or (request.content_length or 0) > 0

        expect = request.header("Expect")
        if expect and expect.lower() == "100-continue":
            request.headers = [(k, v) for k, v in request.headers if k.lower() != "expect"]
            if has_body:
                writer.write(CONTINUE_RESPONSE)
                await writer.drain()

        return TrafficCounter(RequestBody(reader, request)), has_body

    def get_client_ip(self, request: ProxyRequest) -> str:
        """
        Extract the client IP.

        Prefers the first X-Forwarded-For entry, else the peer address;
        any port suffix is removed.
        """
        forwarded = request.header("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return strip_port(first)

        if request.peer:
            return strip_port(request.peer)

        return "unknown"

    def _record(
        self,
        request: ProxyRequest,
        client_ip: str,
        status: int,
        bytes_in: int,
        bytes_out: int,
    ) -> None:
        self.aggregator.log_request(
            client_ip=client_ip,
            method=request.method,
            host=request.host,
            path=request.path,
            status=status,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get gateway statistics."""
        return {
            **self._stats,
            "relay": self.relay.get_stats(),
        }
