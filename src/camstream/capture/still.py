"""
Still Capture
=============

On-demand still images, independent of the preview pipeline state.

Two sources:
    - save_frame: writes the cached latest preview frame to disk
    - GPhotoCapture: triggers a USB camera through gphoto2

Files are named by a random 12-hex-digit id and served from /files.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from camstream.errors import CameraNotDetectedError, StillCaptureError
from camstream.stream.frame import Frame


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StillImage:
    """
    A captured still written to the data directory.

    Attributes:
        job_id: Random hex id, also the file stem
        path: Absolute location on disk
        method: "preview" or "gphoto2"
    """

    job_id: str
    path: Path
    method: str = "preview"

    @property
    def filename(self) -> str:
        return self.path.name


def new_job_id() -> str:
    """Random 12-hex-digit capture id."""
    return secrets.token_hex(6)


async def save_frame(frame: Frame, data_dir: Path, job_id: Optional[str] = None) -> StillImage:
    """
    Write a frame to `<data_dir>/<job_id>.jpg`.

    Args:
        frame: Frame to persist (normally the pipeline's latest frame)
        data_dir: Capture directory (created if missing)
        job_id: Explicit id, random if None

    Returns:
        The written still
    """
    job_id = job_id or new_job_id()
    data_dir.mkdir(parents=True, exist_ok=True)
    path = data_dir / f"{job_id}.jpg"

    await asyncio.to_thread(path.write_bytes, frame.data)
    logger.info(f"Saved preview still {path.name} ({len(frame)} bytes)")
    return StillImage(job_id=job_id, path=path, method="preview")


class GPhotoCapture:
    """
    Still capture through a gphoto2-compatible USB camera.

    Example:
        camera = GPhotoCapture(data_dir=Path("./data/files"))
        still = await camera.capture()
    """

    def __init__(
        self,
        data_dir: Path,
        gphoto2_path: str = "gphoto2",
        timeout: float = 60.0,
    ) -> None:
        self.data_dir = data_dir
        self.gphoto2_path = gphoto2_path
        self.timeout = timeout

    async def _run(self, *args: str, cwd: Optional[Path] = None):
        """Run gphoto2 and return (returncode, stdout, stderr)."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.gphoto2_path,
                *args,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StillCaptureError("gphoto2 not available", details=str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise StillCaptureError(f"gphoto2 timed out after {self.timeout}s") from e

        return (
            process.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def is_connected(self) -> bool:
        """Whether `gphoto2 --summary` finds a camera."""
        returncode, _, _ = await self._run("--summary")
        return returncode == 0

    async def capture(self, job_id: Optional[str] = None) -> StillImage:
        """
        Capture and download one image into the data directory.

        Raises:
            CameraNotDetectedError: If no camera responds to --summary
            StillCaptureError: If gphoto2 fails or produces no file
        """
        if not await self.is_connected():
            raise CameraNotDetectedError("No gphoto2-compatible camera detected")

        job_id = job_id or new_job_id()
        filename = f"{job_id}.jpg"
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self.data_dir / filename

        args = ["--capture-image-and-download", "--filename", filename, "--force-overwrite"]
        logger.info(f"[gphoto2] capturing image: {' '.join(args)}")
        returncode, stdout, stderr = await self._run(*args, cwd=self.data_dir)

        if returncode != 0 or not path.exists():
            logger.error(f"[gphoto2] capture failed: {stderr.strip()}")
            raise StillCaptureError(
                "gphoto2 capture failed",
                details=stderr or stdout,
                returncode=returncode,
            )

        logger.info(f"[gphoto2] capture successful: {filename}")
        return StillImage(job_id=job_id, path=path, method="gphoto2")
