"""
MLCProxy Forward Proxy Module

Request dispatch, access control, plain HTTP relaying and CONNECT
tunneling.
"""

from mlcproxy.proxy.gateway import ProxyGateway
from mlcproxy.proxy.access_control import AccessController, AccessPolicy
from mlcproxy.proxy.relay import UpstreamRelay
from mlcproxy.proxy.tunnel import TunnelSession
from mlcproxy.proxy.traffic_counter import TrafficCounter
from mlcproxy.proxy.server import ProxyServer, run_proxy_server

__all__ = [
    "ProxyGateway",
    "AccessController",
    "AccessPolicy",
    "UpstreamRelay",
    "TunnelSession",
    "TrafficCounter",
    "ProxyServer",
    "run_proxy_server",
]
