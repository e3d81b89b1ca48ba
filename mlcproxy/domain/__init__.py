"""
MLCProxy Domain Layer
Client addresses, network ranges and traffic statistics records.
"""

from mlcproxy.domain.entities import ClientStats, RequestRecord
from mlcproxy.domain.value_objects import (
    NetworkRange,
    parse_ip,
    strip_port,
)

__all__ = [
    # Entities
    "ClientStats",
    "RequestRecord",
    # Value Objects
    "NetworkRange",
    "parse_ip",
    "strip_port",
]
