"""Root pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from mlcproxy.config.settings import Settings
from mlcproxy.proxy.server import ProxyServer
from mlcproxy.stats.aggregator import StatsAggregator
from tests.helpers import UpstreamServer, build_settings, echo_handler

PROXY_ENV_VARS = (
    "PROXY_HOST",
    "PROXY_PORT",
    "LOG_LEVEL",
    "PROXY_STATIC_DIR",
    "PROXY_STATS_PATH",
    "PROXY_API_PATH",
    "PROXY_STATS_HOST",
    "PROXY_DASHBOARD_PORT",
    "PROXY_ENABLE_AUTH",
    "PROXY_AUTH_REALM",
    "PROXY_CREDENTIALS",
    "PROXY_ALLOWED_NETWORKS",
    "PROXY_CONNECT_TIMEOUT",
    "PROXY_RELAY_TIMEOUT",
    "PROXY_TUNNEL_IDLE_TIMEOUT",
    "PROXY_TUNNEL_JOIN",
)


@pytest.fixture(autouse=True)
def _clean_proxy_env(monkeypatch):
    """Keep the developer's environment out of the settings under test."""
    for name in PROXY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def aggregator() -> StatsAggregator:
    return StatsAggregator()


@pytest_asyncio.fixture
async def upstream():
    origin = UpstreamServer()
    server = await asyncio.start_server(origin.handle, "127.0.0.1", 0)
    origin.port = server.sockets[0].getsockname()[1]
    yield origin
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def echo_port():
    server = await asyncio.start_server(echo_handler, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def proxy_factory(aggregator):
    """Start ProxyServers on ephemeral ports; stopped after the test."""
    servers: list[ProxyServer] = []

    async def _start(proxy_settings: Settings) -> ProxyServer:
        server = ProxyServer(proxy_settings, aggregator)
        await server.start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        await server.stop()


@pytest_asyncio.fixture
async def proxy(proxy_factory, settings) -> ProxyServer:
    return await proxy_factory(settings)
