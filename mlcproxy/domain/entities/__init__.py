"""Domain Entities - Traffic statistics records."""

from mlcproxy.domain.entities.client_stats import ClientStats, RequestRecord, utc_now

__all__ = [
    "ClientStats",
    "RequestRecord",
    "utc_now",
]
