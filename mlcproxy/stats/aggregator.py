"""
Statistics Aggregator

Thread-safe per-client traffic counters plus a bounded history of recent
requests. One instance is created at startup and injected into the
gateway; it is the only owner of the statistics state.
"""

import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterator, List, Optional
import structlog

from mlcproxy.domain.entities.client_stats import ClientStats, RequestRecord, utc_now
from mlcproxy.version import BUILD_DATE, VERSION

logger = structlog.get_logger(__name__)

RECENT_REQUESTS_CAPACITY = 100
ACTIVE_CLIENT_WINDOW = timedelta(minutes=5)
TOP_CLIENTS_IN_SNAPSHOT = 10


class ReadWriteLock:
    """
    Many concurrent readers or one writer.

    Writers are preferred: once a writer waits, new readers queue behind
    it so a steady stream of snapshots cannot starve request logging.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class StatsAggregator:
    """
    Aggregates traffic statistics per client IP.

    All mutation goes through log_request under the write lock. Readers
    take the shared lock and only ever receive copies of the internal
    state. Critical sections never await, so the aggregator is safe to call
    from event loop tasks and from threads alike.
    """

    def __init__(self, recent_capacity: int = RECENT_REQUESTS_CAPACITY):
        self._lock = ReadWriteLock()
        self.start_time = utc_now()
        self.total_requests = 0
        self.total_bytes_in = 0
        self.total_bytes_out = 0
        # Insertion order doubles as first-seen order for tie-breaking
        self._clients: Dict[str, ClientStats] = {}
        self._recent: Deque[RequestRecord] = deque(maxlen=recent_capacity)

    def log_request(
        self,
        client_ip: str,
        method: str,
        host: str,
        path: str,
        status: int,
        bytes_in: int,
        bytes_out: int,
    ) -> RequestRecord:
        """
        Record one handled request or tunnel.

        Args:
            client_ip: Client IP without port
            method: Request method
            host: Target host as requested (may include port)
            path: Request path (empty for CONNECT)
            status: Status code the client received
            bytes_in: Bytes received from the client
            bytes_out: Bytes sent to the client

        Returns:
            The RequestRecord appended to the recent history
        """
        if bytes_in < 0 or bytes_out < 0:
            raise ValueError("Byte counts must be non-negative")

        with self._lock.write_locked():
            now = utc_now()
            self.total_requests += 1

            client = self._clients.get(client_ip)
            if client is None:
                client = ClientStats(ip=client_ip, last_seen=now)
                self._clients[client_ip] = client
            client.record(bytes_in, bytes_out, now)

            record = RequestRecord(
                timestamp=now,
                client_ip=client_ip,
                method=method,
                host=host,
                path=path,
                status=status,
                bytes_in=bytes_in,
                bytes_out=bytes_out,
            )
            # deque(maxlen) drops the oldest record when full
            self._recent.append(record)

            self.total_bytes_in += bytes_in
            self.total_bytes_out += bytes_out

        logger.debug(
            "request_logged",
            client_ip=client_ip,
            method=method,
            host=host,
            status=status,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
        )
        return record

    def top_clients(self, n: int) -> List[ClientStats]:
        """
        Get the n clients with the most traffic.

        Sorted by total bytes descending; equal totals keep first-seen
        order (stable sort over insertion order).
        """
        if n <= 0:
            return []
        with self._lock.read_locked():
            clients = [c.copy() for c in self._clients.values()]
        clients.sort(key=lambda c: c.bytes_total, reverse=True)
        return clients[:n]

    def active_clients(
        self,
        threshold: timedelta = ACTIVE_CLIENT_WINDOW,
        now: Optional[datetime] = None,
    ) -> int:
        """Count clients seen within the trailing window."""
        cutoff = (now or utc_now()) - threshold
        with self._lock.read_locked():
            return sum(1 for c in self._clients.values() if c.last_seen > cutoff)

    def recent_requests(self) -> List[RequestRecord]:
        """Recent request records, oldest first."""
        with self._lock.read_locked():
            return list(self._recent)

    def get_client(self, client_ip: str) -> Optional[ClientStats]:
        """Copy of one client's counters, if it has been seen."""
        with self._lock.read_locked():
            client = self._clients.get(client_ip)
            return client.copy() if client else None

    def snapshot(self) -> Dict[str, Any]:
        """
        JSON-serializable view of all statistics for reporting.

        Taken under one read lock so totals, clients and history agree.
        """
        now = utc_now()
        cutoff = now - ACTIVE_CLIENT_WINDOW
        with self._lock.read_locked():
            clients = [c.copy() for c in self._clients.values()]
            recent = list(self._recent)
            totals = (self.total_requests, self.total_bytes_in, self.total_bytes_out)

        active = sum(1 for c in clients if c.last_seen > cutoff)
        clients.sort(key=lambda c: c.bytes_total, reverse=True)

        return {
            "start_time": self.start_time.isoformat(),
            "uptime_seconds": round((now - self.start_time).total_seconds(), 3),
            "total_requests": totals[0],
            "total_bytes_in": totals[1],
            "total_bytes_out": totals[2],
            "active_clients": active,
            "version": VERSION,
            "build_date": BUILD_DATE,
            "recent_requests": [r.to_dict() for r in recent],
            "client_stats": [c.to_dict() for c in clients[:TOP_CLIENTS_IN_SNAPSHOT]],
        }
