"""
Traffic Counter

Pass-through wrapper that tallies the bytes read from a stream without
altering the data. An instance belongs to exactly one reading task (one
per tunnel direction, one per request or response body) and is never
shared between concurrent readers, so it takes no lock.
"""

from typing import AsyncIterator

DEFAULT_CHUNK_SIZE = 64 * 1024


class TrafficCounter:
    """
    Count bytes read from an async byte source.

    The source is either a reader with an awaitable ``read(n)`` (such as
    ``asyncio.StreamReader``) or an async iterator of byte chunks (such as
    ``httpx.Response.aiter_raw()``).
    """

    def __init__(self, source, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._source = source
        self._chunk_size = chunk_size
        self._bytes_read = 0

    @property
    def bytes_read(self) -> int:
        """Cumulative number of bytes returned so far."""
        return self._bytes_read

    async def read(self, n: int = -1) -> bytes:
        """
        Read from the underlying stream and count the returned bytes.

        EOF (b"") and exceptions propagate unchanged.
        """
        data = await self._source.read(n)
        self._bytes_read += len(data)
        return data

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if hasattr(self._source, "read"):
            while True:
                chunk = await self.read(self._chunk_size)
                if not chunk:
                    return
                yield chunk
        else:
            async for chunk in self._source:
                self._bytes_read += len(chunk)
                yield chunk
