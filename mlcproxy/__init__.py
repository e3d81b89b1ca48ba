"""
MLCProxy - Forward HTTP/HTTPS Proxy

Relays client traffic to upstream hosts, enforces IP allow-listing and
optional Basic authentication, and aggregates per-client traffic statistics.
"""

from mlcproxy.version import VERSION, BUILD_DATE, get_version_info

__version__ = VERSION

__all__ = [
    "VERSION",
    "BUILD_DATE",
    "get_version_info",
]
