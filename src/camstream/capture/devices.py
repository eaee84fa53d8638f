"""
Device Listing
==============

Enumerates AVFoundation video devices through ffmpeg.

`ffmpeg -f avfoundation -list_devices true -i ""` prints the device
table on stderr, for example:

    [AVFoundation indev @ 0x7f9] AVFoundation video devices:
    [AVFoundation indev @ 0x7f9] [0] FaceTime HD Camera
    [AVFoundation indev @ 0x7f9] [1] Capture screen 0
    [AVFoundation indev @ 0x7f9] AVFoundation audio devices:
    [AVFoundation indev @ 0x7f9] [0] MacBook Pro Microphone

Only the video section is parsed. The command always exits non-zero
(there is no real input), so the exit code is ignored.
"""

import asyncio
import logging
import re
from typing import List, Optional

from pydantic import BaseModel, Field

from camstream.capture.process import device_index
from camstream.errors import DeviceListingError


logger = logging.getLogger(__name__)


LIST_DEVICES_ARGS = ["-hide_banner", "-f", "avfoundation", "-list_devices", "true", "-i", ""]

_SECTION_TAG = "[AVFoundation indev"
_DEVICE_LINE = re.compile(r"\[(\d+)\]\s+(.+)")


class VideoDevice(BaseModel):
    """One capture device as reported by ffmpeg."""

    index: int = Field(..., ge=0, description="AVFoundation video device index")
    name: str = Field(..., description="Human-readable device name")
    device: str = Field(..., description="Identifier accepted by /camera/switch")


def parse_device_listing(output: str) -> List[VideoDevice]:
    """
    Parse the video device section of an ffmpeg device listing.

    Args:
        output: ffmpeg stderr text

    Returns:
        Devices in the order ffmpeg printed them
    """
    devices: List[VideoDevice] = []
    in_video = False

    for line in output.splitlines():
        if _SECTION_TAG in line and "video devices:" in line:
            in_video = True
            continue
        if _SECTION_TAG in line and "audio devices:" in line:
            break
        if in_video and "] [" in line:
            match = _DEVICE_LINE.search(line)
            if match:
                index = int(match.group(1))
                devices.append(VideoDevice(
                    index=index,
                    name=match.group(2).strip(),
                    device=f"{index}:none",
                ))

    return devices


async def list_video_devices(ffmpeg_path: str = "ffmpeg", timeout: float = 10.0) -> List[VideoDevice]:
    """
    Run ffmpeg's device listing and parse the result.

    Raises:
        DeviceListingError: If ffmpeg cannot be run or does not finish
    """
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            *LIST_DEVICES_ARGS,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise DeviceListingError(f"Failed to list cameras: {e}") from e

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise DeviceListingError(f"Device listing timed out after {timeout}s") from e

    devices = parse_device_listing(stderr.decode(errors="replace"))
    logger.debug(f"Found {len(devices)} video devices")
    return devices


async def resolve_device_name(device: str, ffmpeg_path: str = "ffmpeg") -> Optional[str]:
    """
    Human-readable name for a device identifier.

    Returns:
        The device name, or None if the index is invalid, unknown, or
        the listing could not be run
    """
    index = device_index(device)
    if not index.isdigit():
        return None

    try:
        devices = await list_video_devices(ffmpeg_path)
    except DeviceListingError as e:
        logger.warning(f"Could not resolve camera name for {device}: {e}")
        return None

    for found in devices:
        if found.index == int(index):
            return found.name
    return None
