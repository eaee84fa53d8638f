"""
Errors
======

Exception hierarchy for camstream.

Hierarchy:
    CamstreamError
    ├── CaptureError
    │   ├── SpawnError          (capture process failed to launch)
    │   └── DeviceListingError  (device enumeration failed)
    ├── StillCaptureError
    │   └── CameraNotDetectedError
    └── SinkClosedError         (write to a disconnected client)

Design Rules:
    - SpawnError is surfaced to the caller of start/switch, never fatal
    - SinkClosedError is always handled by removing the client
    - Stalls and process exits are recovered internally and only logged
"""

from typing import Optional


class CamstreamError(Exception):
    """Base class for all camstream errors."""
    pass


class CaptureError(CamstreamError):
    """Raised for capture process lifecycle errors."""
    pass


class SpawnError(CaptureError):
    """
    Raised when the external capture process cannot be started.

    Attributes:
        device: Device identifier the spawn was attempted for
    """

    def __init__(self, message: str, device: str = "") -> None:
        super().__init__(message)
        self.device = device


class DeviceListingError(CaptureError):
    """Raised when the device listing command cannot be run."""
    pass


class StillCaptureError(CamstreamError):
    """
    Raised when a still image capture fails.

    Attributes:
        details: Diagnostic output from the capture tool
        returncode: Exit code of the capture tool, if it ran
    """

    def __init__(
        self,
        message: str,
        details: str = "",
        returncode: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.details = details
        self.returncode = returncode


class CameraNotDetectedError(StillCaptureError):
    """Raised when no gphoto2-compatible camera is connected."""
    pass


class SinkClosedError(CamstreamError):
    """Raised when writing to a client sink that has been closed."""
    pass
