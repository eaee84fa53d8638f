"""
Pipeline Supervisor
===================

State machine owning the capture sessions and wiring them to the registry.

States:
    IDLE      no capture session
    RUNNING   one active session feeding the broadcast registry
    SWAPPING  a replacement session is warming up next to the active one

Transitions:
    IDLE → RUNNING      first viewer connects, or explicit start
    RUNNING → IDLE      registry empty at a janitor sweep, or explicit stop
    RUNNING → RUNNING   watchdog restart after a stall (same device)
    RUNNING → SWAPPING → RUNNING
                        device switch with viewers connected (hot swap)

Hot swap:
    The replacement session is started without stopping the old one.
    The old session keeps feeding viewers until the replacement produces
    its first complete frame; at that point the feed is redirected in a
    single synchronous step and the old session is stopped after a short
    grace delay. If the replacement fails to spawn, exits, or stays silent
    past the swap timeout, the swap is abandoned and the old session stays.

Design Rules:
    - All pipeline state lives on this object (no module globals)
    - Chunk and exit callbacks are synchronous, so they never interleave
    - start/stop/restart and the swap steps are serialized by one asyncio.Lock
    - The lock is released while a replacement warms up; switches queue
      on their own lock
    - stop() is idempotent and tolerates sessions that exited on their own
    - Timer loops never cancel themselves
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Tuple

from camstream.broadcast.registry import BroadcastRegistry, ClientRegistration
from camstream.broadcast.sink import ClientSink
from camstream.capture.process import CaptureProcessLike, ChunkCallback, ExitCallback
from camstream.errors import SpawnError
from camstream.metrics import PipelineMetrics
from camstream.stream.extractor import FrameExtractor
from camstream.stream.frame import Frame


logger = logging.getLogger(__name__)


ProcessFactory = Callable[..., CaptureProcessLike]


class PipelineState(str, Enum):
    """
    Lifecycle states of the preview pipeline.

    Attributes:
        IDLE: No capture session
        RUNNING: One active session feeding viewers
        SWAPPING: Replacement session warming up during a device change
    """

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SWAPPING = "SWAPPING"


@dataclass(eq=False)
class CaptureSession:
    """
    One capture process plus its private frame extractor.

    Attributes:
        device: Device identifier the process captures from
        extractor: Frame extractor fed only by this session
        started_at: Clock reading when the session was created
        process: Underlying capture process
        frames: Frames extracted so far
    """

    device: str
    extractor: FrameExtractor
    started_at: float
    process: Optional[CaptureProcessLike] = None
    frames: int = 0


class PipelineSupervisor:
    """
    Owner of the preview pipeline.

    Attributes:
        registry: Broadcast registry the active session feeds
        metrics: Shared pipeline counters

    Example:
        supervisor = PipelineSupervisor(
            process_factory=partial(CaptureProcess, width=1280, height=720, fps=30),
            device="0:none",
        )

        await supervisor.add_client(sink, max_fps=10)   # starts the pipeline
        await supervisor.switch_device("1:none")         # hot swap
        supervisor.remove_client(sink, "disconnect")
        await supervisor.shutdown()
    """

    def __init__(
        self,
        process_factory: ProcessFactory,
        device: str = "0:none",
        registry: Optional[BroadcastRegistry] = None,
        watchdog_interval: float = 2.0,
        stall_threshold: float = 5.0,
        janitor_interval: float = 10.0,
        swap_grace: float = 0.1,
        swap_timeout: float = 10.0,
        stop_timeout: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize supervisor (nothing is started).

        Args:
            process_factory: Called as factory(device=..., on_chunk=..., on_exit=...)
                and returns an unstarted capture process
            device: Initial device identifier
            registry: Broadcast registry (a default one is created if None)
            watchdog_interval: Seconds between stall checks
            stall_threshold: Seconds without frames that count as a stall
            janitor_interval: Seconds between dead client sweeps
            swap_grace: Seconds before the superseded session is stopped
            swap_timeout: Seconds the replacement has to produce a frame
            stop_timeout: Seconds allowed for a process to exit on SIGTERM
            clock: Monotonic time source, injectable for tests
        """
        self._process_factory = process_factory
        self._device = device
        self._clock = clock
        self.registry = registry or BroadcastRegistry(clock=clock)
        self.metrics: PipelineMetrics = self.registry.metrics

        self.watchdog_interval = watchdog_interval
        self.stall_threshold = stall_threshold
        self.janitor_interval = janitor_interval
        self.swap_grace = swap_grace
        self.swap_timeout = swap_timeout
        self.stop_timeout = stop_timeout

        self._lock = asyncio.Lock()
        self._switch_lock = asyncio.Lock()
        self._state = PipelineState.IDLE
        self._active: Optional[CaptureSession] = None
        self._candidate: Optional[CaptureSession] = None
        self._superseded: Optional[CaptureSession] = None
        self._swap_waiter: Optional[asyncio.Future] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._janitor_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Read-only state
    # =========================================================================

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def current_device(self) -> str:
        return self._device

    @property
    def latest_frame(self) -> Optional[Frame]:
        return self.registry.latest_frame

    @property
    def last_frame_at(self) -> Optional[float]:
        return self.registry.last_frame_at

    @property
    def client_count(self) -> int:
        return len(self.registry)

    @property
    def active_session(self) -> Optional[CaptureSession]:
        return self._active

    @property
    def sessions(self) -> List[CaptureSession]:
        """Every session this supervisor still owns and has not stopped."""
        return [
            s for s in (self._active, self._candidate, self._superseded)
            if s is not None
        ]

    def snapshot(self) -> dict:
        """State summary for /metrics."""
        last = self.registry.last_frame_at
        return {
            "state": self._state.value,
            "device": self._device,
            "clients": len(self.registry),
            "has_frame": self.registry.latest_frame is not None,
            "seconds_since_frame": round(self._clock() - last, 2) if last is not None else None,
            **self.metrics.to_dict(),
        }

    # =========================================================================
    # Clients
    # =========================================================================

    async def add_client(self, sink: ClientSink, max_fps: float = 0.0) -> ClientRegistration:
        """
        Register a viewer and start the pipeline if needed.

        Raises:
            SpawnError: If the pipeline had to start and could not; the
                viewer is deregistered before the error propagates
        """
        registration = self.registry.add(sink, max_fps)
        try:
            await self.ensure_running()
        except SpawnError:
            self.registry.remove(sink, "spawn-error")
            raise
        return registration

    def remove_client(self, sink: ClientSink, reason: str = "disconnect") -> bool:
        """Deregister a viewer. Never pauses the pipeline for others."""
        return self.registry.remove(sink, reason)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, device: Optional[str] = None) -> None:
        """
        Start the pipeline if idle.

        Args:
            device: Device to capture from (current device if None)

        Raises:
            SpawnError: If the capture process cannot be launched
        """
        async with self._lock:
            await self._start_locked(device)

    async def ensure_running(self) -> None:
        """Start if idle; respawn if the active session exited on its own."""
        if self._state is not PipelineState.IDLE and self._active is not None:
            return

        async with self._lock:
            if self._state is PipelineState.IDLE:
                await self._start_locked(None)
            elif self._state is PipelineState.RUNNING and self._active is None:
                await self._respawn_locked("session exited")

    async def stop(self, reason: str = "stop") -> None:
        """Stop the pipeline. No-op when already idle."""
        async with self._lock:
            await self._stop_locked(reason)

    async def restart(self, reason: str = "restart") -> None:
        """
        Tear down the active session and start a new one for the same device.

        Raises:
            SpawnError: If the new process cannot be launched
        """
        async with self._lock:
            if self._state is not PipelineState.RUNNING:
                return
            await self._respawn_locked(reason)

    async def switch_device(self, device: str) -> str:
        """
        Change the capture device.

        Hot swaps when viewers are watching a live session, otherwise
        performs a plain stop and start. Switches are serialized; while a
        replacement warms up the pipeline lock is released, so the
        watchdog, the janitor and stop() keep working.

        Args:
            device: New device identifier

        Returns:
            The current device after the switch

        Raises:
            SpawnError: If the new device cannot be started. During a hot
                swap the previous device keeps streaming.
        """
        async with self._switch_lock:
            async with self._lock:
                if (
                    self._state is not PipelineState.RUNNING
                    or self._active is None
                    or self.registry.is_empty
                ):
                    await self._stop_locked("device switch")
                    await self._start_locked(device)
                    return self._device

                candidate, waiter = await self._begin_swap_locked(device)

            await self._finish_swap(device, candidate, waiter)
            return self._device

    async def shutdown(self) -> None:
        """Stop the pipeline and disconnect every viewer."""
        await self.stop("shutdown")
        self.registry.close_all("shutdown")

    # =========================================================================
    # Locked helpers
    # =========================================================================

    async def _start_locked(self, device: Optional[str]) -> None:
        if self._state is not PipelineState.IDLE:
            return

        target = device or self._device
        session = await self._spawn(target)

        self._device = target
        self._active = session
        self._state = PipelineState.RUNNING
        self.registry.mark_fresh()
        self._start_timers()
        logger.info(f"Pipeline started on device {target}")

    async def _stop_locked(self, reason: str) -> None:
        if self._state is PipelineState.IDLE:
            return

        waiter = self._swap_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(SpawnError(f"Pipeline stopped during device switch ({reason})"))

        sessions = self.sessions
        self._active = None
        self._candidate = None
        self._superseded = None
        self._state = PipelineState.IDLE
        self._cancel_timers()
        self.registry.clear_latest()

        for session in sessions:
            await self._stop_session(session)
        logger.info(f"Pipeline stopped ({reason})")

    async def _respawn_locked(self, reason: str) -> None:
        old = self._active
        self._active = None
        if old is not None:
            await self._stop_session(old)

        logger.info(f"Restarting pipeline on {self._device} ({reason})")
        session = await self._spawn(self._device)
        self._active = session
        self.registry.mark_fresh()

    async def _begin_swap_locked(self, device: str) -> Tuple[CaptureSession, asyncio.Future]:
        """Spawn the replacement session next to the active one."""
        logger.info(f"Hot swap {self._device} -> {device}")
        self._state = PipelineState.SWAPPING
        waiter = asyncio.get_running_loop().create_future()
        self._swap_waiter = waiter

        try:
            candidate = await self._spawn(device)
        except SpawnError:
            self._swap_waiter = None
            self._state = PipelineState.RUNNING
            self.metrics.swaps_abandoned += 1
            logger.warning(f"Hot swap to {device} abandoned, keeping {self._device}")
            raise

        self._candidate = candidate
        return candidate, waiter

    async def _finish_swap(
        self,
        device: str,
        candidate: CaptureSession,
        waiter: asyncio.Future,
    ) -> None:
        """Wait for the replacement's first frame, then retire the old session."""
        committed = False
        try:
            old = await asyncio.wait_for(waiter, timeout=self.swap_timeout)
            committed = True
        except asyncio.TimeoutError as e:
            raise SpawnError(
                f"Device {device} produced no frame within {self.swap_timeout}s",
                device=device,
            ) from e
        finally:
            if self._swap_waiter is waiter:
                self._swap_waiter = None
            if not committed:
                # Cleared before any await so a late frame cannot commit
                if self._candidate is candidate:
                    self._candidate = None
                if self._state is PipelineState.SWAPPING:
                    self._state = PipelineState.RUNNING
                self.metrics.swaps_abandoned += 1
                logger.warning(f"Hot swap to {device} abandoned, keeping {self._device}")
                await self._stop_session(candidate)

        try:
            await asyncio.sleep(self.swap_grace)
        finally:
            if old is not None:
                await self._stop_session(old)
            if self._superseded is old:
                self._superseded = None
        logger.info(f"Hot swap complete, now streaming {device}")

    # =========================================================================
    # Sessions
    # =========================================================================

    async def _spawn(self, device: str) -> CaptureSession:
        session = CaptureSession(
            device=device,
            extractor=FrameExtractor(clock=self._clock),
            started_at=self._clock(),
        )
        on_chunk: ChunkCallback = partial(self._on_chunk, session)
        on_exit: ExitCallback = partial(self._on_exit, session)
        session.process = self._process_factory(
            device=device,
            on_chunk=on_chunk,
            on_exit=on_exit,
        )

        try:
            await session.process.start()
        except SpawnError as e:
            self.metrics.spawn_failures += 1
            logger.error(f"Capture spawn failed for {device}: {e}")
            raise

        self.metrics.sessions_started += 1
        return session

    async def _stop_session(self, session: CaptureSession) -> None:
        if session.process is None:
            return
        try:
            await session.process.stop(timeout=self.stop_timeout)
        except Exception:
            logger.exception(f"Error stopping capture session for {session.device}")

    def _on_chunk(self, session: CaptureSession, chunk: bytes) -> None:
        frames = session.extractor.feed(chunk)
        if not frames:
            return
        session.frames += len(frames)

        if session is self._candidate:
            self._commit_swap(session)

        if session is self._active:
            for frame in frames:
                self.registry.broadcast_latest(frame)

    def _commit_swap(self, session: CaptureSession) -> None:
        """Redirect the feed to the replacement session."""
        old = self._active
        self._active = session
        self._candidate = None
        self._superseded = old
        self._device = session.device
        self._state = PipelineState.RUNNING
        self.metrics.swaps_completed += 1
        logger.info(f"Hot swap committed: feed now from {session.device}")

        waiter = self._swap_waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(old)

    def _on_exit(self, session: CaptureSession, returncode: Optional[int]) -> None:
        self.metrics.process_exits += 1

        if session is self._candidate:
            waiter = self._swap_waiter
            if waiter is not None and not waiter.done():
                message = (
                    f"Device {session.device} exited with code {returncode} "
                    f"before producing a frame"
                )
                tail = getattr(session.process, "stderr_tail", "")
                if tail:
                    message += f": {tail}"
                waiter.set_exception(SpawnError(message, device=session.device))
            return

        if session is self._active:
            self._active = None
            logger.warning(
                f"Capture process for {session.device} exited unexpectedly "
                f"(code={returncode})"
            )

    # =========================================================================
    # Timers
    # =========================================================================

    def _start_timers(self) -> None:
        if self._watchdog_task is None:
            self._watchdog_task = asyncio.create_task(
                self._watchdog_loop(),
                name="pipeline_watchdog",
            )
        if self._janitor_task is None:
            self._janitor_task = asyncio.create_task(
                self._janitor_loop(),
                name="pipeline_janitor",
            )

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._watchdog_task, self._janitor_task):
            if task is not None and task is not current:
                task.cancel()
        self._watchdog_task = None
        self._janitor_task = None

    async def _watchdog_loop(self) -> None:
        """Restart the pipeline when viewers are waiting and frames stopped."""
        me = asyncio.current_task()
        while self._watchdog_task is me:
            await asyncio.sleep(self.watchdog_interval)
            try:
                await self._check_stall()
            except SpawnError as e:
                logger.error(f"Watchdog restart failed: {e}")
            except Exception:
                logger.exception("Watchdog check failed")

    async def _check_stall(self) -> None:
        if self.registry.is_empty or self._state is not PipelineState.RUNNING:
            return

        last = self.registry.last_frame_at
        since = self._clock() - last if last is not None else math.inf
        if since > self.stall_threshold:
            logger.warning(f"No frames for {since:.1f}s, restarting pipeline...")
            self.metrics.watchdog_restarts += 1
            await self.restart("stall")

    async def _janitor_loop(self) -> None:
        """Prune dead viewers and idle the pipeline when none remain."""
        me = asyncio.current_task()
        while self._janitor_task is me:
            await asyncio.sleep(self.janitor_interval)
            try:
                await self._sweep()
            except Exception:
                logger.exception("Janitor sweep failed")

    async def _sweep(self) -> None:
        self.registry.prune_dead()
        if self.registry.is_empty:
            logger.info("No clients remaining, stopping pipeline")
            await self.stop("idle")
