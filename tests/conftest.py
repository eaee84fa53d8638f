"""
Test Configuration
==================

Pytest fixtures and test doubles for camstream.

The capture process is replaced by FakeCaptureProcess through the
supervisor's process_factory, so no test needs ffmpeg or a camera.
"""

import asyncio
import time
from typing import Callable, List, Optional, Set

import pytest

from camstream.broadcast import BroadcastRegistry
from camstream.errors import SpawnError
from camstream.pipeline import PipelineSupervisor
from camstream.stream import EOI_MARKER, SOI_MARKER


def make_jpeg(payload: bytes = b"jpeg-body") -> bytes:
    """Minimal byte sequence the extractor accepts as one frame."""
    return SOI_MARKER + payload + EOI_MARKER


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true, failing the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.005)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Sinks
# =============================================================================

class RecordingSink:
    """Sink that keeps every part written to it."""

    def __init__(self) -> None:
        self.parts: List[bytes] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        self.parts.append(data)

    def close(self) -> None:
        self._closed = True

    def disconnect(self) -> None:
        """Simulate the viewer going away without deregistering."""
        self._closed = True


class FailingSink(RecordingSink):
    """Sink whose writes always fail."""

    def write(self, data: bytes) -> None:
        raise OSError("broken pipe")


# =============================================================================
# Capture Process
# =============================================================================

class FakeCaptureProcess:
    """In-memory stand-in for CaptureProcess."""

    def __init__(self, device: str, on_chunk=None, on_exit=None, fail: bool = False) -> None:
        self.device = device
        self.on_chunk = on_chunk
        self.on_exit = on_exit
        self.fail = fail
        self.started = False
        self.stop_calls = 0
        self.stderr_tail = ""
        self._returncode: Optional[int] = None

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def stopped(self) -> bool:
        return self.stop_calls > 0

    async def start(self) -> None:
        if self.fail:
            raise SpawnError(f"cannot open {self.device}", device=self.device)
        self.started = True

    async def stop(self, timeout: float = 2.0) -> None:
        self.stop_calls += 1
        if self.started and self._returncode is None:
            self.exit(-15)

    def emit(self, chunk: bytes) -> None:
        """Deliver a stdout chunk."""
        self.on_chunk(chunk)

    def exit(self, code: int) -> None:
        """Simulate the process ending."""
        if self._returncode is not None:
            return
        self._returncode = code
        if self.on_exit is not None:
            self.on_exit(code)


class FakeProcessFactory:
    """process_factory that records every process it creates."""

    def __init__(self) -> None:
        self.processes: List[FakeCaptureProcess] = []
        self.fail_devices: Set[str] = set()

    def __call__(self, device: str, on_chunk=None, on_exit=None) -> FakeCaptureProcess:
        process = FakeCaptureProcess(
            device,
            on_chunk=on_chunk,
            on_exit=on_exit,
            fail=device in self.fail_devices,
        )
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeCaptureProcess:
        return self.processes[-1]

    def for_device(self, device: str) -> List[FakeCaptureProcess]:
        return [p for p in self.processes if p.device == device]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def jpeg():
    """Provide one complete JPEG byte sequence."""
    return make_jpeg()


@pytest.fixture
def clock():
    """Provide a manual clock starting at 100.0."""
    return ManualClock(100.0)


@pytest.fixture
def factory():
    """Provide a recording fake process factory."""
    return FakeProcessFactory()


@pytest.fixture
def registry():
    """Provide a registry without keep-alive tasks."""
    return BroadcastRegistry(keepalive_interval=0)


@pytest.fixture
def supervisor(factory, registry):
    """Provide a supervisor with short timings and quiet timers."""
    return PipelineSupervisor(
        process_factory=factory,
        device="0:none",
        registry=registry,
        watchdog_interval=60.0,
        stall_threshold=5.0,
        janitor_interval=60.0,
        swap_grace=0.01,
        swap_timeout=1.0,
        stop_timeout=0.1,
    )
