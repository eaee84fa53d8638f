"""
camstream Configuration
=======================

This module handles configuration loading for the preview server.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority, .env file included)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    AVFOUNDATION_DEVICE    -> capture.device
    PREVIEW_WIDTH          -> capture.width
    PREVIEW_HEIGHT         -> capture.height
    PREVIEW_FPS            -> capture.fps
    CAMSTREAM_FFMPEG_PATH  -> capture.ffmpeg_path
    CAMSTREAM_DATA_DIR     -> storage.data_dir
    CAMSTREAM_LOG_LEVEL    -> logging.level
    CAMSTREAM_LOG_FORMAT   -> logging.format
    PORT                   -> server.port
    CAMSTREAM_CONFIG       -> path of the YAML file

Example:
    from camstream.config import settings

    print(settings.capture.device)
    print(settings.pipeline.stall_threshold_sec)
"""

import json
import os
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class ServiceConfig(BaseModel):
    """Service identification configuration."""

    name: str = Field(default="camstream", description="Service name")
    version: str = Field(default="v0.1.0", description="Service version")


class CaptureConfig(BaseModel):
    """External capture process configuration."""

    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg executable")
    device: str = Field(
        default="0:none",
        description="Initial device identifier '<video index>:<suffix>'",
    )
    width: int = Field(default=1280, ge=16, description="Capture width in pixels")
    height: int = Field(default=720, ge=16, description="Capture height in pixels")
    fps: int = Field(default=30, ge=1, le=240, description="Capture frame rate")
    pixel_format: str = Field(default="yuyv422", description="Input pixel format")
    video_filter: Optional[str] = Field(
        default="hflip",
        description="ffmpeg -vf filter chain (None disables filtering)",
    )
    jpeg_quality: int = Field(
        default=5,
        ge=1,
        le=31,
        description="MJPEG quantizer passed as -q:v (lower is better)",
    )


class PipelineConfig(BaseModel):
    """Supervisor timing configuration."""

    watchdog_interval_sec: float = Field(
        default=2.0,
        gt=0,
        description="Interval between stall checks",
    )
    stall_threshold_sec: float = Field(
        default=5.0,
        gt=0,
        description="Time without frames before the pipeline is restarted",
    )
    janitor_interval_sec: float = Field(
        default=10.0,
        gt=0,
        description="Interval between dead client sweeps",
    )
    swap_grace_sec: float = Field(
        default=0.1,
        ge=0,
        description="Delay before the superseded session is stopped",
    )
    swap_timeout_sec: float = Field(
        default=10.0,
        gt=0,
        description="Time allowed for the new device to produce its first frame",
    )
    stop_timeout_sec: float = Field(
        default=2.0,
        gt=0,
        description="Time allowed for SIGTERM before SIGKILL",
    )


class StreamConfig(BaseModel):
    """Viewer stream configuration."""

    boundary: str = Field(default="frame", description="Multipart boundary")
    keepalive_interval_sec: float = Field(
        default=15.0,
        gt=0,
        description="Interval between keep-alive re-sends of the latest frame",
    )
    max_client_fps: int = Field(
        default=60,
        ge=1,
        description="Upper clamp for the ?fps= query parameter",
    )
    client_queue_size: int = Field(
        default=2,
        ge=1,
        description="Pending parts kept per client (oldest dropped when full)",
    )


class StorageConfig(BaseModel):
    """Still capture storage configuration."""

    data_dir: str = Field(default="./data/files", description="Capture directory")
    gphoto2_path: str = Field(default="gphoto2", description="gphoto2 executable")


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=5000, ge=1, le=65535, description="Bind port")
    cors_origins: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed CORS origins",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for camstream.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, uses CAMSTREAM_CONFIG
            or searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    load_dotenv()

    if config_path is None:
        config_path = os.environ.get("CAMSTREAM_CONFIG")

    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path(__file__).parent.parent.parent / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.debug("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Capture settings
    if env_device := os.environ.get("AVFOUNDATION_DEVICE"):
        config_data.setdefault("capture", {})["device"] = env_device
    if env_width := os.environ.get("PREVIEW_WIDTH"):
        config_data.setdefault("capture", {})["width"] = int(env_width)
    if env_height := os.environ.get("PREVIEW_HEIGHT"):
        config_data.setdefault("capture", {})["height"] = int(env_height)
    if env_fps := os.environ.get("PREVIEW_FPS"):
        config_data.setdefault("capture", {})["fps"] = int(env_fps)
    if env_ffmpeg := os.environ.get("CAMSTREAM_FFMPEG_PATH"):
        config_data.setdefault("capture", {})["ffmpeg_path"] = env_ffmpeg

    # Storage settings
    if env_data := os.environ.get("CAMSTREAM_DATA_DIR"):
        config_data.setdefault("storage", {})["data_dir"] = env_data

    # Server settings
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("CAMSTREAM_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log
    if env_fmt := os.environ.get("CAMSTREAM_LOG_FORMAT"):
        config_data.setdefault("logging", {})["format"] = env_fmt


LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"
TEXT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """Formats each record as one JSON object, escaping the message."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter(datefmt=LOG_DATEFMT))
        logging.basicConfig(level=log_level, handlers=[handler])
    else:
        logging.basicConfig(
            level=log_level,
            format=TEXT_LOG_FORMAT,
            datefmt=LOG_DATEFMT,
        )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
