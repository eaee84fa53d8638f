"""
camstream Main Application
==========================

FastAPI entry point for the camera preview server.

Endpoints:
    GET  /                 - Service information
    GET  /health           - Liveness probe
    GET  /metrics          - Pipeline state and counters
    GET  /cameras          - Available video devices
    GET  /camera/current   - Current device and its name
    POST /camera/switch    - Change the capture device (hot swap if live)
    GET  /preview?fps=N    - multipart/x-mixed-replace MJPEG stream
    POST /capture          - Save the latest preview frame
    POST /capture-gphoto2  - Capture a still through gphoto2
    GET  /files/*          - Captured stills
"""

import logging
import time
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from camstream import __version__
from camstream.broadcast import BroadcastRegistry, QueueSink
from camstream.capture import (
    CaptureProcess,
    GPhotoCapture,
    list_video_devices,
    resolve_device_name,
    save_frame,
)
from camstream.config import Settings, settings as default_settings
from camstream.errors import (
    CameraNotDetectedError,
    DeviceListingError,
    SpawnError,
    StillCaptureError,
)
from camstream.pipeline import PipelineSupervisor
from camstream.stream import content_type


logger = logging.getLogger(__name__)


PREVIEW_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# =============================================================================
# Helpers
# =============================================================================

def create_supervisor(settings: Settings) -> PipelineSupervisor:
    """Build the pipeline supervisor from settings."""
    capture = settings.capture
    process_factory = partial(
        CaptureProcess,
        width=capture.width,
        height=capture.height,
        fps=capture.fps,
        ffmpeg_path=capture.ffmpeg_path,
        pixel_format=capture.pixel_format,
        video_filter=capture.video_filter,
        jpeg_quality=capture.jpeg_quality,
    )
    registry = BroadcastRegistry(
        boundary=settings.stream.boundary,
        keepalive_interval=settings.stream.keepalive_interval_sec,
    )
    pipeline = settings.pipeline
    return PipelineSupervisor(
        process_factory=process_factory,
        device=capture.device,
        registry=registry,
        watchdog_interval=pipeline.watchdog_interval_sec,
        stall_threshold=pipeline.stall_threshold_sec,
        janitor_interval=pipeline.janitor_interval_sec,
        swap_grace=pipeline.swap_grace_sec,
        swap_timeout=pipeline.swap_timeout_sec,
        stop_timeout=pipeline.stop_timeout_sec,
    )


def parse_fps(raw: Optional[str], upper: int = 60) -> float:
    """
    Parse the ?fps= query parameter.

    Non-numeric values mean unlimited (0); numbers are clamped to [0, upper].
    """
    if raw is None:
        return 0.0
    try:
        value = float(raw)
    except ValueError:
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(float(upper), value))


async def stream_sink(
    supervisor: PipelineSupervisor,
    sink: QueueSink,
) -> AsyncIterator[bytes]:
    """
    Response body for one viewer.

    Drains the sink until it is closed, deregistering the viewer when
    the generator finishes or is cancelled.
    """
    try:
        async for part in sink:
            yield part
    finally:
        supervisor.remove_client(sink, "disconnect")


class PreviewResponse(StreamingResponse):
    """
    Streaming response bound to one registered viewer.

    The viewer is deregistered whenever the response ends, including a
    peer that disconnects before the body generator is first iterated.
    """

    def __init__(self, supervisor: PipelineSupervisor, sink: QueueSink, boundary: str) -> None:
        super().__init__(
            stream_sink(supervisor, sink),
            media_type=content_type(boundary),
            headers=PREVIEW_HEADERS,
        )
        self.supervisor = supervisor
        self.sink = sink

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.supervisor.remove_client(self.sink, "disconnect")


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    supervisor: Optional[PipelineSupervisor] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Configuration (module settings if None)
        supervisor: Pipeline supervisor (built from settings if None)

    Returns:
        Configured application; the supervisor lives on app.state
    """
    settings = settings or default_settings
    supervisor = supervisor or create_supervisor(settings)
    data_dir = Path(settings.storage.data_dir).resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        app.state.startup_time = time.time()
        logger.info(
            f"{settings.service.name} {settings.service.version} starting: "
            f"device={supervisor.current_device} "
            f"size={settings.capture.width}x{settings.capture.height} "
            f"fps={settings.capture.fps} data_dir={data_dir}"
        )

        yield

        logger.info("Shutting down gracefully...")
        await supervisor.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="camstream",
        description="Live MJPEG camera preview and still capture",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.supervisor = supervisor
    app.state.startup_time = time.time()
    app.state.gphoto = GPhotoCapture(
        data_dir=data_dir,
        gphoto2_path=settings.storage.gphoto2_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Service Endpoints
    # =========================================================================

    @app.get("/")
    async def root() -> JSONResponse:
        """Service information endpoint."""
        return JSONResponse({
            "service": settings.service.name,
            "version": settings.service.version,
            "status": "running",
            "device": supervisor.current_device,
        })

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe. Always 200 while the process is up."""
        return JSONResponse({"ok": True})

    @app.get("/metrics")
    async def metrics(request: Request) -> JSONResponse:
        """Pipeline state and counters."""
        return JSONResponse({
            "uptime_seconds": round(time.time() - request.app.state.startup_time, 1),
            **supervisor.snapshot(),
        })

    # =========================================================================
    # Camera Endpoints
    # =========================================================================

    @app.get("/cameras")
    async def cameras() -> JSONResponse:
        """List AVFoundation video devices."""
        try:
            devices = await list_video_devices(settings.capture.ffmpeg_path)
        except DeviceListingError as e:
            logger.error(f"Camera listing failed: {e}")
            return JSONResponse(
                {"error": "Failed to list cameras", "details": str(e)},
                status_code=500,
            )
        return JSONResponse({"cameras": [d.model_dump() for d in devices]})

    @app.get("/camera/current")
    async def camera_current() -> JSONResponse:
        """Current device identifier and its human-readable name."""
        device = supervisor.current_device
        name = await resolve_device_name(device, settings.capture.ffmpeg_path)
        return JSONResponse({"device": device, "name": name})

    @app.post("/camera/switch")
    async def camera_switch(request: Request) -> JSONResponse:
        """
        Switch the capture device.

        Body: {"device": "1:none"}
        """
        try:
            body = await request.json()
        except ValueError:
            body = None

        device = body.get("device") if isinstance(body, dict) else None
        if not isinstance(device, str) or not device:
            return JSONResponse(
                {"error": "Device parameter required (e.g., '0:none')"},
                status_code=400,
            )

        logger.info(f"Switching camera to {device}")
        try:
            current = await supervisor.switch_device(device)
        except SpawnError as e:
            logger.error(f"Camera switch to {device} failed: {e}")
            return JSONResponse(
                {"error": "Failed to switch camera", "details": str(e)},
                status_code=500,
            )

        return JSONResponse({
            "success": True,
            "device": current,
            "message": f"Switched to camera device {current}",
        })

    # =========================================================================
    # Preview Stream
    # =========================================================================

    @app.get("/preview")
    async def preview(request: Request, fps: Optional[str] = None):
        """multipart/x-mixed-replace MJPEG stream of the current device."""
        max_fps = parse_fps(fps, settings.stream.max_client_fps)
        peer = f"{request.client.host}:{request.client.port}" if request.client else "client"
        sink = QueueSink(maxsize=settings.stream.client_queue_size, label=peer)

        try:
            await supervisor.add_client(sink, max_fps)
        except SpawnError as e:
            return JSONResponse(
                {"error": "Failed to start preview", "details": str(e)},
                status_code=503,
            )

        return PreviewResponse(supervisor, sink, settings.stream.boundary)

    # =========================================================================
    # Still Capture
    # =========================================================================

    @app.post("/capture")
    async def capture() -> JSONResponse:
        """Save the latest preview frame as a still."""
        frame = supervisor.latest_frame
        if frame is None:
            return JSONResponse({"error": "no frame yet"}, status_code=503)

        still = await save_frame(frame, data_dir)
        return JSONResponse({
            "jobId": still.job_id,
            "status": "done",
            "file": f"/files/{still.filename}",
        })

    @app.post("/capture-gphoto2")
    async def capture_gphoto2(request: Request) -> JSONResponse:
        """Capture a still with a USB camera through gphoto2."""
        camera: GPhotoCapture = request.app.state.gphoto
        try:
            still = await camera.capture()
        except CameraNotDetectedError as e:
            return JSONResponse({"error": str(e)}, status_code=503)
        except StillCaptureError as e:
            return JSONResponse(
                {"error": str(e), "details": e.details, "code": e.returncode},
                status_code=500,
            )

        return JSONResponse({
            "jobId": still.job_id,
            "status": "done",
            "file": f"/files/{still.filename}",
            "method": still.method,
        })

    app.mount("/files", StaticFiles(directory=str(data_dir)), name="files")

    return app


# =============================================================================
# FastAPI Application
# =============================================================================

app = create_app()


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "camstream.main:app",
        host=default_settings.server.host,
        port=default_settings.server.port,
        reload=False,
    )
