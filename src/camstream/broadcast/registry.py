"""
Broadcast Registry
==================

The set of connected preview viewers and the fan-out of frames to them.

This module provides the BroadcastRegistry class which:
    - Tracks one ClientRegistration per viewer sink
    - Throttles delivery per client (latest frame wins, no backlog)
    - Caches the latest frame for late joiners and keep-alives
    - Removes clients whose writes fail or whose connection closed

Design Rules:
    - A sink is registered at most once
    - remove() is idempotent
    - A failing client never interrupts delivery to the others
    - All methods except the keep-alive loop are synchronous, so they
      never interleave on the event loop
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from camstream.broadcast.sink import ClientSink
from camstream.metrics import PipelineMetrics
from camstream.stream.frame import Frame
from camstream.stream.multipart import DEFAULT_BOUNDARY, encode_part


logger = logging.getLogger(__name__)


DEFAULT_KEEPALIVE_INTERVAL_SEC = 15.0


@dataclass
class ClientRegistration:
    """
    Delivery state for one viewer.

    Attributes:
        sink: Output the encoded parts are written to
        max_fps: Requested frame rate cap (0 = unlimited)
        connected_at: Clock reading at registration
        last_sent: Clock reading of the last delivered part, None until then
        frames_sent: Parts delivered to this client
        keepalive_task: Periodic re-send of the cached frame
    """

    sink: ClientSink
    max_fps: float = 0.0
    connected_at: float = 0.0
    last_sent: Optional[float] = None
    frames_sent: int = 0
    keepalive_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def min_interval(self) -> float:
        """Minimum seconds between deliveries (0 when unthrottled)."""
        return 1.0 / self.max_fps if self.max_fps > 0 else 0.0

    def is_throttled(self, now: float) -> bool:
        """Whether a frame at `now` would exceed this client's rate cap."""
        if self.max_fps <= 0 or self.last_sent is None:
            return False
        return (now - self.last_sent) < self.min_interval


class BroadcastRegistry:
    """
    Registry of streaming clients with per-client throttling.

    Attributes:
        boundary: Multipart boundary used when encoding parts
        keepalive_interval: Seconds between keep-alive re-sends (0 disables)
        metrics: Shared pipeline counters

    Example:
        registry = BroadcastRegistry()
        registry.add(sink, max_fps=10)

        for frame in extractor.feed(chunk):
            registry.broadcast_latest(frame)

        registry.remove(sink, "disconnect")
    """

    def __init__(
        self,
        boundary: str = DEFAULT_BOUNDARY,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[PipelineMetrics] = None,
    ) -> None:
        """
        Initialize registry.

        Args:
            boundary: Multipart boundary string
            keepalive_interval: Keep-alive period in seconds (0 disables)
            clock: Monotonic time source, injectable for tests
            metrics: Counters shared with the supervisor
        """
        if keepalive_interval < 0:
            raise ValueError("keepalive_interval must be >= 0")

        self.boundary = boundary
        self.keepalive_interval = keepalive_interval
        self.metrics = metrics or PipelineMetrics()
        self._clock = clock
        self._clients: Dict[ClientSink, ClientRegistration] = {}
        self._latest_frame: Optional[Frame] = None
        self._last_frame_at: Optional[float] = None

    # =========================================================================
    # Introspection
    # =========================================================================

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, sink: object) -> bool:
        return sink in self._clients

    @property
    def is_empty(self) -> bool:
        return not self._clients

    @property
    def latest_frame(self) -> Optional[Frame]:
        """Most recently broadcast frame, None if cleared or never set."""
        return self._latest_frame

    @property
    def last_frame_at(self) -> Optional[float]:
        """Clock reading of the last broadcast."""
        return self._last_frame_at

    def get(self, sink: ClientSink) -> Optional[ClientRegistration]:
        return self._clients.get(sink)

    def registrations(self) -> List[ClientRegistration]:
        return list(self._clients.values())

    # =========================================================================
    # Membership
    # =========================================================================

    def add(self, sink: ClientSink, max_fps: float = 0.0) -> ClientRegistration:
        """
        Register a viewer.

        Starts the client's keep-alive task and sends the cached latest
        frame right away, if there is one. Must be called from a running
        event loop when keep-alives are enabled.

        Args:
            sink: Viewer output
            max_fps: Frame rate cap, 0 for unlimited

        Returns:
            The registration (the existing one if already registered)
        """
        if max_fps < 0:
            raise ValueError("max_fps must be >= 0")

        existing = self._clients.get(sink)
        if existing is not None:
            return existing

        registration = ClientRegistration(
            sink=sink,
            max_fps=max_fps,
            connected_at=self._clock(),
        )
        self._clients[sink] = registration
        self.metrics.clients_connected += 1

        if self.keepalive_interval > 0:
            registration.keepalive_task = asyncio.create_task(
                self._keepalive_loop(registration),
                name="client_keepalive",
            )

        logger.info(
            f"Client connected. Total clients: {len(self._clients)} "
            f"(fps={max_fps or 'unlimited'})"
        )

        if self._latest_frame is not None:
            self._deliver(
                registration,
                encode_part(self._latest_frame, self.boundary),
                self._clock(),
                failure_reason="initial-write-error",
            )

        return registration

    def remove(self, sink: ClientSink, reason: str = "") -> bool:
        """
        Deregister a viewer and close its sink. No-op if absent.

        Returns:
            True if the sink was registered
        """
        registration = self._clients.pop(sink, None)
        if registration is None:
            return False

        task = registration.keepalive_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        registration.keepalive_task = None

        try:
            sink.close()
        except Exception as e:
            logger.debug(f"Error closing sink: {e}")

        self.metrics.clients_removed += 1
        logger.info(f"Client removed ({reason}). Remaining: {len(self._clients)}")
        return True

    def prune_dead(self) -> int:
        """
        Remove every client whose connection reports closed.

        Returns:
            Number of clients removed
        """
        dead = [sink for sink in self._clients if sink.closed]
        if dead:
            logger.info(f"Removing {len(dead)} dead clients")
        for sink in dead:
            self.remove(sink, "dead-client")
        return len(dead)

    def close_all(self, reason: str = "shutdown") -> int:
        """Remove every client. Returns the number removed."""
        sinks = list(self._clients)
        for sink in sinks:
            self.remove(sink, reason)
        return len(sinks)

    # =========================================================================
    # Delivery
    # =========================================================================

    def broadcast_latest(self, frame: Frame) -> int:
        """
        Cache a frame and deliver it to every client not throttled.

        Args:
            frame: Newly extracted frame

        Returns:
            Number of clients the frame was written to
        """
        now = self._clock()
        self._latest_frame = frame
        self._last_frame_at = now
        self.metrics.frames_broadcast += 1

        if not self._clients:
            return 0

        part = encode_part(frame, self.boundary)
        written = 0
        for registration in list(self._clients.values()):
            if registration.is_throttled(now):
                self.metrics.throttled_skips += 1
                continue
            if self._deliver(registration, part, now, failure_reason="write-error"):
                written += 1
        return written

    def clear_latest(self) -> None:
        """Forget the cached frame (pipeline stopped)."""
        self._latest_frame = None

    def mark_fresh(self) -> None:
        """Reset the staleness clock without a frame (new session started)."""
        self._last_frame_at = self._clock()

    def _deliver(
        self,
        registration: ClientRegistration,
        part: bytes,
        now: float,
        failure_reason: str,
    ) -> bool:
        """Write one part to one client, removing it on failure."""
        sink = registration.sink
        if sink.closed:
            self.remove(sink, "ended")
            return False

        try:
            sink.write(part)
        except Exception as e:
            self.metrics.write_errors += 1
            logger.warning(f"Write error, dropping client: {e}")
            self.remove(sink, failure_reason)
            return False

        registration.last_sent = now
        registration.frames_sent += 1
        self.metrics.client_writes += 1
        return True

    async def _keepalive_loop(self, registration: ClientRegistration) -> None:
        """Periodically re-send the cached frame to one idle client."""
        sink = registration.sink
        while self._clients.get(sink) is registration:
            await asyncio.sleep(self.keepalive_interval)
            if self._clients.get(sink) is not registration:
                break
            if sink.closed:
                self.remove(sink, "ended")
                break
            frame = self._latest_frame
            if frame is None:
                continue
            delivered = self._deliver(
                registration,
                encode_part(frame, self.boundary),
                self._clock(),
                failure_reason="heartbeat-error",
            )
            if not delivered:
                break
