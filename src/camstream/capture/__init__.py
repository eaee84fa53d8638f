"""
Capture Module
==============

Everything that talks to external capture tools.

Components:
    - CaptureProcess: ffmpeg subprocess producing raw MJPEG on stdout
    - list_video_devices / resolve_device_name: AVFoundation enumeration
    - save_frame / GPhotoCapture: still image capture
"""

from camstream.capture.process import (
    CaptureProcess,
    CaptureProcessLike,
    build_ffmpeg_args,
    device_index,
)
from camstream.capture.devices import (
    VideoDevice,
    list_video_devices,
    parse_device_listing,
    resolve_device_name,
)
from camstream.capture.still import GPhotoCapture, StillImage, save_frame


__all__ = [
    "CaptureProcess",
    "CaptureProcessLike",
    "build_ffmpeg_args",
    "device_index",
    "VideoDevice",
    "list_video_devices",
    "parse_device_listing",
    "resolve_device_name",
    "GPhotoCapture",
    "StillImage",
    "save_frame",
]
