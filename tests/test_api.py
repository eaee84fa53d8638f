"""
API Tests
=========

HTTP endpoint tests through FastAPI's TestClient, with the capture
process replaced by FakeCaptureProcess.
"""

import contextlib

import pytest
from fastapi.testclient import TestClient

from camstream.broadcast import QueueSink
from camstream.config import Settings
from camstream.main import (
    PREVIEW_HEADERS,
    PreviewResponse,
    create_app,
    parse_fps,
    stream_sink,
)
from camstream.pipeline import PipelineState
from camstream.stream import Frame


def preview_scope():
    """ASGI scope for GET /preview from a server that reports send failures."""
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/preview",
        "raw_path": b"/preview",
        "query_string": b"",
        "root_path": "",
        "headers": [],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }


async def disconnected_receive():
    return {"type": "http.disconnect"}


async def reset_send(message):
    raise OSError("connection reset")


MISSING_BINARY = "/nonexistent/camstream-test-binary"


@pytest.fixture
def app_settings(tmp_path):
    """Settings pointing at a temporary data dir and missing tools."""
    return Settings.model_validate({
        "capture": {"ffmpeg_path": MISSING_BINARY},
        "storage": {"data_dir": str(tmp_path / "files"), "gphoto2_path": MISSING_BINARY},
    })


@pytest.fixture
def client(app_settings, supervisor):
    """Provide a TestClient with lifespan handling."""
    app = create_app(settings=app_settings, supervisor=supervisor)
    with TestClient(app) as test_client:
        yield test_client


class TestServiceEndpoints:
    """Tests for /, /health and /metrics."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_root(self, client):
        data = client.get("/").json()

        assert data["service"] == "camstream"
        assert data["device"] == "0:none"

    def test_metrics(self, client):
        data = client.get("/metrics").json()

        assert data["state"] == "IDLE"
        assert data["clients"] == 0
        assert "uptime_seconds" in data
        assert "watchdog_restarts" in data

    def test_cors_allows_any_origin(self, client):
        response = client.get("/health", headers={"Origin": "http://example.com"})

        assert response.headers["access-control-allow-origin"] == "*"


class TestCameraEndpoints:
    """Tests for camera listing and switching."""

    def test_cameras_listing_failure(self, client):
        response = client.get("/cameras")

        assert response.status_code == 500
        assert response.json()["error"] == "Failed to list cameras"

    def test_current_camera_without_ffmpeg(self, client):
        response = client.get("/camera/current")

        assert response.status_code == 200
        assert response.json() == {"device": "0:none", "name": None}

    def test_switch_requires_device(self, client):
        response = client.post("/camera/switch", json={})

        assert response.status_code == 400

    def test_switch_rejects_non_string_device(self, client):
        response = client.post("/camera/switch", json={"device": 1})

        assert response.status_code == 400

    def test_switch_rejects_invalid_json(self, client):
        response = client.post(
            "/camera/switch",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_switch_device(self, client, supervisor, factory):
        response = client.post("/camera/switch", json={"device": "1:none"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "device": "1:none",
            "message": "Switched to camera device 1:none",
        }
        assert supervisor.current_device == "1:none"
        assert factory.last.device == "1:none"
        assert client.get("/camera/current").json()["device"] == "1:none"

    def test_switch_failure(self, client, supervisor, factory):
        factory.fail_devices.add("3:none")

        response = client.post("/camera/switch", json={"device": "3:none"})

        assert response.status_code == 500
        assert response.json()["error"] == "Failed to switch camera"
        assert "3:none" in response.json()["details"]
        assert supervisor.current_device == "0:none"


class TestPreview:
    """Tests for the preview stream endpoint."""

    def test_preview_spawn_failure(self, client, supervisor, factory):
        factory.fail_devices.add("0:none")

        response = client.get("/preview")

        assert response.status_code == 503
        assert supervisor.client_count == 0
        assert supervisor.state is PipelineState.IDLE

    @pytest.mark.parametrize("raw,expected", [
        (None, 0.0),
        ("10", 10.0),
        ("2.5", 2.5),
        ("-5", 0.0),
        ("500", 60.0),
        ("fast", 0.0),
        ("nan", 0.0),
    ])
    def test_parse_fps(self, raw, expected):
        assert parse_fps(raw) == expected

    def test_preview_headers(self):
        assert PREVIEW_HEADERS["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert PREVIEW_HEADERS["X-Accel-Buffering"] == "no"

    @pytest.mark.asyncio
    async def test_stream_sink_drains_and_deregisters(self, supervisor, jpeg):
        sink = QueueSink(maxsize=4)
        await supervisor.add_client(sink)
        supervisor.registry.broadcast_latest(Frame(data=jpeg))

        body = stream_sink(supervisor, sink)
        part = await body.__anext__()
        await body.aclose()

        assert part.startswith(b"--frame\r\n")
        assert part.endswith(jpeg + b"\r\n")
        assert sink not in supervisor.registry
        assert sink.closed
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_viewer_gone_before_body_starts_is_deregistered(self, app_settings, supervisor):
        app = create_app(settings=app_settings, supervisor=supervisor)

        with contextlib.suppress(Exception):
            await app(preview_scope(), disconnected_receive, reset_send)

        assert supervisor.client_count == 0
        await supervisor._sweep()
        assert supervisor.state is PipelineState.IDLE
        assert supervisor.sessions == []

    @pytest.mark.asyncio
    async def test_preview_response_deregisters_on_send_failure(self, supervisor, jpeg):
        sink = QueueSink(maxsize=4)
        await supervisor.add_client(sink)
        supervisor.registry.broadcast_latest(Frame(data=jpeg))
        response = PreviewResponse(supervisor, sink, "frame")

        with contextlib.suppress(Exception):
            await response(preview_scope(), disconnected_receive, reset_send)

        assert sink not in supervisor.registry
        assert sink.closed
        await supervisor.shutdown()


class TestCapture:
    """Tests for still capture endpoints."""

    def test_capture_without_frame(self, client):
        response = client.post("/capture")

        assert response.status_code == 503
        assert response.json() == {"error": "no frame yet"}

    def test_capture_latest_frame(self, client, supervisor, jpeg):
        supervisor.registry.broadcast_latest(Frame(data=jpeg))

        response = client.post("/capture")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "done"
        assert len(data["jobId"]) == 12
        assert data["file"] == f"/files/{data['jobId']}.jpg"

        still = client.get(data["file"])
        assert still.status_code == 200
        assert still.content == jpeg

    def test_capture_gphoto2_unavailable(self, client):
        response = client.post("/capture-gphoto2")

        assert response.status_code == 500
        assert response.json()["error"] == "gphoto2 not available"
