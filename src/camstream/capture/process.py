"""
Capture Process
===============

Owns one ffmpeg subprocess reading a camera and writing raw MJPEG to stdout.

This module provides the CaptureProcess class which:
    - Spawns ffmpeg with a fixed argument set for one device
    - Delivers stdout chunks to a callback in arrival order
    - Logs ffmpeg's stderr (never parsed for control flow)
    - Signals exit exactly once (event + callback)
    - Stops with SIGTERM, escalating to SIGKILL after a timeout

Design Rules:
    - A handle is single use: once exited it must not be restarted
    - stop() is idempotent and tolerates a process that already exited
    - Spawn failures raise SpawnError, nothing else is fatal
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Protocol

from camstream.errors import CaptureError, SpawnError


logger = logging.getLogger(__name__)


ChunkCallback = Callable[[bytes], None]
ExitCallback = Callable[[Optional[int]], None]

DEFAULT_READ_SIZE = 64 * 1024
STDERR_TAIL_LINES = 20


def device_index(device: str) -> str:
    """
    Video device index from a device identifier.

    Args:
        device: Identifier such as "0:none" (index before the first ':')

    Returns:
        The index part, e.g. "0"
    """
    return str(device).split(":", 1)[0].strip()


def build_ffmpeg_args(
    device: str,
    width: int,
    height: int,
    fps: int,
    pixel_format: str = "yuyv422",
    video_filter: Optional[str] = "hflip",
    jpeg_quality: int = 5,
) -> List[str]:
    """
    Build the ffmpeg argument list for an AVFoundation MJPEG preview.

    Raises:
        SpawnError: If the device index is not a non-negative integer
    """
    index = device_index(device)
    if not index.isdigit():
        raise SpawnError(f"Invalid device identifier: {device!r}", device=device)

    args = [
        "-hide_banner",
        "-loglevel", "error",
        "-f", "avfoundation",
        "-framerate", str(fps),
        "-video_size", f"{width}x{height}",
        "-capture_cursor", "0",
        "-capture_mouse_clicks", "0",
        "-pixel_format", pixel_format,
        "-video_device_index", index,
        "-audio_device_index", "none",
        "-i", "",
        "-an",
    ]
    if video_filter:
        args += ["-vf", video_filter]
    args += [
        "-f", "mjpeg",
        "-q:v", str(jpeg_quality),
        "pipe:1",
    ]
    return args


class CaptureProcessLike(Protocol):
    """Interface the pipeline supervisor needs from a capture process."""

    device: str

    @property
    def returncode(self) -> Optional[int]:
        ...

    async def start(self) -> None:
        ...

    async def stop(self, timeout: float = 2.0) -> None:
        ...


class CaptureProcess:
    """
    One ffmpeg capture subprocess.

    Attributes:
        device: Device identifier this process captures from
        exited: Event set once the process has ended
        bytes_read: Total stdout bytes delivered

    Example:
        process = CaptureProcess(
            device="0:none",
            on_chunk=extractor_feed,
            on_exit=lambda code: print("exited", code),
        )
        await process.start()
        ...
        await process.stop()
    """

    def __init__(
        self,
        device: str,
        on_chunk: Optional[ChunkCallback] = None,
        on_exit: Optional[ExitCallback] = None,
        width: int = 1280,
        height: int = 720,
        fps: int = 30,
        ffmpeg_path: str = "ffmpeg",
        pixel_format: str = "yuyv422",
        video_filter: Optional[str] = "hflip",
        jpeg_quality: int = 5,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        """
        Initialize capture process (does not spawn).

        Args:
            device: Device identifier, e.g. "0:none"
            on_chunk: Called with each stdout chunk, in order
            on_exit: Called once with the return code when the process ends
            width: Capture width
            height: Capture height
            fps: Capture frame rate
            ffmpeg_path: ffmpeg executable
            pixel_format: AVFoundation input pixel format
            video_filter: -vf filter chain, None to disable
            jpeg_quality: MJPEG -q:v value
            read_size: Maximum bytes per stdout read
        """
        self.device = device
        self.width = width
        self.height = height
        self.fps = fps
        self.ffmpeg_path = ffmpeg_path
        self.pixel_format = pixel_format
        self.video_filter = video_filter
        self.jpeg_quality = jpeg_quality
        self.read_size = read_size

        self._on_chunk = on_chunk
        self._on_exit = on_exit

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._returncode: Optional[int] = None
        self._stopping: bool = False
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        self.exited = asyncio.Event()
        self.bytes_read: int = 0

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        """Exit code once exited (negative for signals), else None."""
        return self._returncode

    @property
    def running(self) -> bool:
        return self._process is not None and not self.exited.is_set()

    @property
    def stderr_tail(self) -> str:
        """Last lines ffmpeg wrote to stderr."""
        return "\n".join(self._stderr_tail)

    def args(self) -> List[str]:
        return build_ffmpeg_args(
            self.device,
            self.width,
            self.height,
            self.fps,
            pixel_format=self.pixel_format,
            video_filter=self.video_filter,
            jpeg_quality=self.jpeg_quality,
        )

    async def start(self) -> None:
        """
        Spawn ffmpeg and begin reading its output.

        Raises:
            SpawnError: If the executable cannot be launched
            CaptureError: If this handle was already started
        """
        if self._process is not None or self.exited.is_set():
            raise CaptureError(f"Capture process for {self.device} already started")

        args = self.args()
        logger.info(f"Starting ffmpeg for {self.device}: {' '.join(args)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(
                f"Failed to spawn {self.ffmpeg_path} for {self.device}: {e}",
                device=self.device,
            ) from e

        logger.debug(f"ffmpeg started: device={self.device} pid={self._process.pid}")

        self._stdout_task = asyncio.create_task(
            self._read_stdout(),
            name=f"capture_stdout[{self.device}]",
        )
        self._stderr_task = asyncio.create_task(
            self._read_stderr(),
            name=f"capture_stderr[{self.device}]",
        )

    async def stop(self, timeout: float = 2.0) -> None:
        """
        Terminate the process. Idempotent.

        Sends SIGTERM, waits up to `timeout` seconds, then SIGKILL.
        A process that already exited (or never started) is not an error.
        """
        process = self._process
        if process is None:
            return

        self._stopping = True
        if process.returncode is None:
            self._signal(process.terminate)
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
                logger.debug(f"ffmpeg terminated gracefully: {self.device}")
            except asyncio.TimeoutError:
                logger.warning(f"ffmpeg did not exit within {timeout}s, killing: {self.device}")
                self._signal(process.kill)
                await process.wait()

        tasks = [t for t in (self._stdout_task, self._stderr_task) if t is not None and not t.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()

        self._mark_exited(process.returncode)

    async def wait(self) -> Optional[int]:
        """Wait until the process has exited and return its code."""
        await self.exited.wait()
        return self._returncode

    def _signal(self, send: Callable[[], None]) -> None:
        try:
            send()
        except ProcessLookupError:
            pass  # Already exited

    async def _read_stdout(self) -> None:
        """Forward stdout chunks until EOF, then reap the process."""
        process = self._process
        stream = process.stdout

        while True:
            chunk = await stream.read(self.read_size)
            if not chunk:
                break
            self.bytes_read += len(chunk)
            if self._on_chunk is None:
                continue
            try:
                self._on_chunk(chunk)
            except Exception:
                logger.exception(f"Chunk handler failed for {self.device}")

        returncode = await process.wait()
        self._mark_exited(returncode)

    async def _read_stderr(self) -> None:
        """Log ffmpeg diagnostics line by line."""
        stream = self._process.stderr

        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").strip()
            if text:
                self._stderr_tail.append(text)
                logger.warning(f"[ffmpeg {self.device}] {text}")

    def _mark_exited(self, returncode: Optional[int]) -> None:
        """Record exit and fire the exit callback, once."""
        if self.exited.is_set():
            return
        self._returncode = returncode
        self.exited.set()

        level = logging.INFO if self._stopping else logging.WARNING
        if returncode is not None and returncode < 0:
            logger.log(level, f"ffmpeg exited: device={self.device} signal={-returncode}")
        else:
            logger.log(level, f"ffmpeg exited: device={self.device} code={returncode}")

        if self._on_exit is not None:
            try:
                self._on_exit(returncode)
            except Exception:
                logger.exception(f"Exit handler failed for {self.device}")

    def __repr__(self) -> str:
        return f"CaptureProcess(device={self.device!r}, pid={self.pid}, returncode={self._returncode})"
