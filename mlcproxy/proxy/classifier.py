"""
Request Classification

Maps a parsed request head onto one of the kinds the gateway handles,
so each branch can be dispatched and tested on its own.
"""

from dataclasses import dataclass
from typing import Union

from mlcproxy.proxy.http_messages import ProxyRequest

DEVTOOLS_PROBE_PATH = "/.well-known/appspecific/com.chrome.devtools"
DEFAULT_CONNECT_PORT = 443


@dataclass(frozen=True)
class StatsRequest:
    """Request for the built-in statistics pages; skips access control."""

    request: ProxyRequest


@dataclass(frozen=True)
class ConnectRequest:
    """HTTPS tunnel request."""

    request: ProxyRequest
    host: str
    port: int

    @property
    def address(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


@dataclass(frozen=True)
class DevtoolsProbe:
    """Browser devtools probe answered locally with an empty JSON object."""

    request: ProxyRequest


@dataclass(frozen=True)
class PlainRequest:
    """Ordinary HTTP request relayed to the upstream."""

    request: ProxyRequest


ClassifiedRequest = Union[StatsRequest, ConnectRequest, DevtoolsProbe, PlainRequest]


def split_connect_target(target: str) -> tuple[str, int]:
    """
    Split a CONNECT authority into host and port.

    The port defaults to 443 when absent. Bracketed IPv6 is unwrapped.

    Raises:
        ValueError: If the host is empty or the port is not a valid number
    """
    if target.startswith("["):
        end = target.find("]")
        if end == -1:
            raise ValueError(f"Invalid CONNECT target: {target}")
        host, rest = target[1:end], target[end + 1:]
        port_text = rest[1:] if rest.startswith(":") else ""
    elif target.count(":") == 1:
        host, port_text = target.split(":", 1)
    else:
        # Bare hostname, IPv4 or unbracketed IPv6 literal
        host, port_text = target, ""

    if not host:
        raise ValueError(f"Invalid CONNECT target: {target}")

    if not port_text:
        return host, DEFAULT_CONNECT_PORT

    port = int(port_text)
    if not 0 < port < 65536:
        raise ValueError(f"Invalid CONNECT port: {port_text}")
    return host, port


def is_stats_path(path: str, stats_path: str) -> bool:
    """True when ``path`` is the statistics path or lies below it."""
    prefix = stats_path.rstrip("/")
    if not prefix:
        return False
    return path == prefix or path.startswith(prefix + "/")


def classify(request: ProxyRequest, stats_path: str, stats_host: str) -> ClassifiedRequest:
    """
    Classify a request.

    Order matters: statistics requests are recognized first, then CONNECT,
    then the devtools probe; everything else is relayed.

    A request is for the statistics pages when it names the reserved
    stats host, or when it is origin-form (addressed to the proxy itself)
    and its path is the stats path or a segment below it. Absolute-form
    requests for other hosts are always relayed.

    Raises:
        ValueError: For a CONNECT request with an unusable target
    """
    if request.method != "CONNECT":
        if stats_host and request.hostname.lower() == stats_host.lower():
            return StatsRequest(request)
        if not request.is_absolute and stats_path and is_stats_path(request.path, stats_path):
            return StatsRequest(request)

    if request.method == "CONNECT":
        host, port = split_connect_target(request.target)
        return ConnectRequest(request, host=host, port=port)

    if DEVTOOLS_PROBE_PATH in request.path:
        return DevtoolsProbe(request)

    return PlainRequest(request)
