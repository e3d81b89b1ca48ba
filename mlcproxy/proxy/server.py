"""
Proxy Server Entry Point

Standalone asyncio server running MLCProxy as a forward proxy, optionally
with the statistics dashboard on its own port.
"""

import asyncio
import sys
from typing import Optional
import structlog
import uvicorn

from mlcproxy.config.settings import Settings
from mlcproxy.proxy.exceptions import ProxyServerError
from mlcproxy.proxy.gateway import ProxyGateway
from mlcproxy.stats.aggregator import StatsAggregator
from mlcproxy.version import COPYRIGHT, get_version_info

logger = structlog.get_logger(__name__)


class ProxyServer:
    """
    Listening socket plus gateway.

    Each accepted connection runs ``ProxyGateway.handle_connection`` in its
    own task.
    """

    def __init__(self, settings: Settings, aggregator: Optional[StatsAggregator] = None):
        self.settings = settings
        self.aggregator = aggregator or StatsAggregator()
        self.gateway = ProxyGateway(settings, self.aggregator)

        self._server: Optional[asyncio.AbstractServer] = None
        self._dashboard: Optional[uvicorn.Server] = None

    @property
    def port(self) -> Optional[int]:
        """Actual listening port (useful when bound to port 0)."""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """
        Bind the listening socket.

        Raises:
            ProxyServerError: If the port cannot be bound
        """
        await self.gateway.initialize()

        host = self.settings.server.host
        port = self.settings.server.port
        try:
            self._server = await asyncio.start_server(
                self.gateway.handle_connection,
                host=host,
                port=port,
            )
        except OSError as e:
            await self.gateway.shutdown()
            raise ProxyServerError(f"Failed to listen on {host}:{port}: {e}") from e

        self._log_security_settings()
        logger.info("proxy_server_listening", host=host, port=self.port)

    async def serve_forever(self) -> None:
        """Serve until cancelled; runs the dashboard alongside if configured."""
        if self._server is None:
            await self.start()

        services = [self._server.serve_forever()]

        dashboard_port = self.settings.features.dashboard_port
        if dashboard_port:
            dashboard_config = uvicorn.Config(
                self.gateway.stats_app,
                host=self.settings.server.host,
                port=dashboard_port,
                log_level=self.settings.server.log_level.lower(),
            )
            self._dashboard = uvicorn.Server(dashboard_config)
            services.append(self._dashboard.serve())
            logger.info("dashboard_enabled", port=dashboard_port)

        try:
            await asyncio.gather(*services)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop accepting connections and release the HTTP clients."""
        if self._dashboard is not None:
            self._dashboard.should_exit = True
            self._dashboard = None

        if self._server is not None:
            server, self._server = self._server, None
            server.close()
            await server.wait_closed()

        await self.gateway.shutdown()
        logger.info("proxy_server_stopped", **self.gateway.get_stats())

    def _log_security_settings(self) -> None:
        policy = self.gateway.access.policy
        logger.info(
            "security_settings",
            auth_enabled=policy.auth_enabled,
            auth_users=len(policy.credentials),
            allowed_networks=policy.network_list,
            stats_host=self.settings.features.stats_host,
        )
        if policy.allows_everyone:
            logger.warning("no_allowed_networks_configured_all_clients_allowed")
        elif not policy.networks:
            logger.warning("no_valid_allowed_networks_all_clients_denied", rejected=list(policy.rejected))


def print_banner(settings: Settings) -> None:
    """Print startup banner."""
    auth = "Enabled" if settings.auth.enable_auth else "Disabled"
    dashboard = settings.features.dashboard_port or "-"

    print(f"""
┌─────────────────────────────────────────────────────────────┐
│  MLCProxy {get_version_info():<50}│
│  {COPYRIGHT:<59}│
├─────────────────────────────────────────────────────────────┤
│  Listen Address:   {settings.server.host}:{settings.server.port:<34}│
│  Authentication:   {auth:<41}│
│  Statistics:       http://{settings.features.stats_host:<34}│
│  Stats Path:       {settings.paths.stats_path:<41}│
│  Dashboard Port:   {dashboard!s:<41}│
└─────────────────────────────────────────────────────────────┘
""")
    print("  Allowed Networks:")
    for network in settings.security.allowed_networks:
        print(f"    • {network}")
    print()


async def serve(settings: Settings) -> None:
    """Run a ProxyServer until cancelled."""
    server = ProxyServer(settings)
    await server.serve_forever()


def run_proxy_server(settings: Settings) -> None:
    """
    Run the forward proxy.

    Exits with status 1 on invalid configuration or when the listening
    port cannot be bound.
    """
    errors = settings.validate_settings()
    if errors:
        logger.error("configuration_invalid", errors=errors)
        print(f"Configuration errors: {errors}")
        sys.exit(1)

    print_banner(settings)

    try:
        asyncio.run(serve(settings))
    except ProxyServerError as e:
        logger.error("proxy_server_failed", error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("proxy_server_interrupted")
