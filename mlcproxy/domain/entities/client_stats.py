"""
Client Statistics Entities
Per-client counters and request history records.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class ClientStats:
    """
    Cumulative traffic counters for one client IP.

    Counters only grow and last_seen only moves forward. Instances are
    owned by the StatsAggregator; callers only ever receive copies.
    """

    ip: str
    bytes_in: int = 0
    bytes_out: int = 0
    requests: int = 0
    last_seen: datetime = field(default_factory=utc_now)

    @property
    def bytes_total(self) -> int:
        return self.bytes_in + self.bytes_out

    def record(self, bytes_in: int, bytes_out: int, seen_at: datetime) -> None:
        """Add one request's traffic to the counters."""
        self.requests += 1
        self.bytes_in += bytes_in
        self.bytes_out += bytes_out
        if seen_at > self.last_seen:
            self.last_seen = seen_at

    def copy(self) -> "ClientStats":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "ip": self.ip,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "bytes_total": self.bytes_total,
            "requests": self.requests,
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass(frozen=True)
class RequestRecord:
    """Immutable snapshot of one handled request, kept for reporting."""

    timestamp: datetime
    client_ip: str
    method: str
    host: str
    path: str
    status: int
    bytes_in: int
    bytes_out: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "client_ip": self.client_ip,
            "method": self.method,
            "host": self.host,
            "path": self.path,
            "status": self.status,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
        }
