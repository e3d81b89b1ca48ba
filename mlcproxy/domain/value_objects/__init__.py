"""Domain Value Objects - Immutable domain primitives."""

from mlcproxy.domain.value_objects.ip_address import (
    NetworkRange,
    parse_ip,
    strip_port,
)

__all__ = [
    "NetworkRange",
    "parse_ip",
    "strip_port",
]
