"""
camstream
=========

Live MJPEG camera preview server with on-demand still capture.

A single ffmpeg process reads the selected camera and writes MJPEG to its
stdout. Complete JPEG frames are cut out of that byte stream and fanned out
to every connected browser as a multipart/x-mixed-replace response. The
capture process only runs while someone is watching.

Components:
    - stream: Frame type, JPEG frame extraction, multipart encoding
    - capture: ffmpeg capture process, device listing, still capture
    - broadcast: Viewer sinks and the client registry
    - pipeline: Supervisor state machine (watchdog, janitor, hot swap)

Example:
    uvicorn camstream.main:app --port 5000

    # or
    python -m camstream.main
"""

__version__ = "0.1.0"
__author__ = "camstream contributors"

__all__ = [
    "__version__",
]
