"""
Client Sink
===========

Non-blocking output sink for one streaming viewer.

The registry writes encoded parts into the sink; the HTTP response
drains it asynchronously. A slow viewer therefore never blocks the
broadcast loop or the capture reader.

Design Rules:
    - Fixed maximum size (drops oldest part on overflow)
    - write() never awaits
    - Writing to a closed sink raises SinkClosedError
    - Does NOT inspect or modify parts
"""

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, Optional, Protocol

from camstream.errors import SinkClosedError


class ClientSink(Protocol):
    """
    Protocol for viewer outputs held by the broadcast registry.

    Implementations must make write() non-blocking and report
    liveness through the closed property.
    """

    @property
    def closed(self) -> bool:
        ...

    def write(self, data: bytes) -> None:
        ...

    def close(self) -> None:
        ...


class QueueSink:
    """
    Bounded latest-wins queue of multipart parts.

    Attributes:
        maxsize: Maximum number of pending parts
        dropped_count: Parts dropped because the viewer fell behind
        label: Name used in log messages (usually the peer address)

    Example:
        sink = QueueSink(maxsize=2, label="127.0.0.1:50412")

        # Producer (registry)
        sink.write(part)

        # Consumer (HTTP response body)
        async for part in sink:
            yield part
    """

    def __init__(self, maxsize: int = 2, label: str = "client") -> None:
        """
        Initialize sink.

        Args:
            maxsize: Maximum pending parts. Must be >= 1.
            label: Name used in log messages
        """
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")

        self.label = label
        self._maxsize = maxsize
        self._parts: Deque[bytes] = deque()
        self._ready = asyncio.Event()
        self._closed: bool = False
        self._dropped_count: int = 0
        self._total_written: int = 0

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of parts waiting to be sent."""
        return len(self._parts)

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    @property
    def total_written(self) -> int:
        return self._total_written

    def write(self, data: bytes) -> None:
        """
        Queue a part, dropping the oldest pending part if full.

        Raises:
            SinkClosedError: If the viewer has disconnected
        """
        if self._closed:
            raise SinkClosedError(f"sink {self.label} is closed")

        if len(self._parts) >= self._maxsize:
            self._parts.popleft()
            self._dropped_count += 1

        self._parts.append(data)
        self._total_written += 1
        self._ready.set()

    def close(self) -> None:
        """Mark the sink closed and wake the consumer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._parts.clear()
        self._ready.set()

    async def get(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Wait for the next part.

        Args:
            timeout: Maximum seconds to wait. None = wait forever.

        Returns:
            Next part, or None if the sink closed or the timeout elapsed.
        """
        while not self._parts:
            if self._closed:
                return None
            self._ready.clear()
            try:
                if timeout is not None:
                    await asyncio.wait_for(self._ready.wait(), timeout=timeout)
                else:
                    await self._ready.wait()
            except asyncio.TimeoutError:
                return None

        if self._closed:
            return None
        return self._parts.popleft()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        """Yield parts until the sink is closed."""
        while True:
            part = await self.get()
            if part is None:
                break
            yield part

    def __repr__(self) -> str:
        return f"QueueSink(label={self.label!r}, pending={len(self._parts)}, closed={self._closed})"
