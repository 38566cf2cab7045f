"""Central configuration for the liveness streaming controller."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class GateSettings(BaseModel):
    """Face-presence gate that precedes every session."""
    required_hits: int = Field(10, ge=1, description="Consecutive qualifying detections before a session starts")
    min_confidence: float = Field(0.7, ge=0.0, le=1.0, description="Detection confidence must be strictly above this")


class UplinkSettings(BaseModel):
    """Outbound frame throttling."""
    target_fps: float = Field(25.0, gt=0, description="Target send rate (25 fps = one frame per 40ms)")
    measurement_window_s: float = Field(1.0, gt=0, description="Window used to compute achieved send fps")
    jpeg_quality: int = Field(90, ge=1, le=100, description="JPEG quality used when encoding camera frames")

    @property
    def frame_interval_s(self) -> float:
        return 1.0 / self.target_fps


class RecordingSettings(BaseModel):
    """Recording countdown."""
    duration_seconds: int = Field(15, ge=1, description="Length of every recording")
    tick_seconds: float = Field(1.0, gt=0, description="Countdown step")


class RetrieverSettings(BaseModel):
    """Result artifact polling."""
    grace_period_s: float = Field(2.0, ge=0, description="Wait before the first results request")
    retry_backoff_s: float = Field(2.0, ge=0, description="Wait between 'not ready' retries")
    max_attempts: Optional[int] = Field(None, ge=1, description="Cap on results requests (None = poll until reset)")
    close_delay_s: float = Field(1.0, ge=0, description="Pause between closing the stream and the stop handshake")


class CameraSettings(BaseModel):
    """Local camera used by the capture pump."""
    enabled: bool = Field(False, description="Start the camera pump with the service")
    device_index: int = Field(0, description="OpenCV device index")
    resolution_width: int = Field(640, description="Capture width (pixels)")
    resolution_height: int = Field(480, description="Capture height (pixels)")
    face_confidence: float = Field(0.5, description="MediaPipe minimum detection confidence (0-1)")


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Backend
    backend_api_url: str = Field("http://localhost:8001", description="Liveness service REST base URL")
    backend_ws_url: Optional[str] = Field(None, description="Liveness service WebSocket base URL (derived from API URL if unset)")
    http_timeout_s: float = Field(30.0, description="Timeout applied to every REST call")
    ws_open_timeout_s: float = Field(30.0, description="Timeout for the streaming connection handshake")

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Results
    results_directory: Path = Field(ROOT_DIR / "results", description="Where retrieved artifacts are written")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    gate: GateSettings = Field(default_factory=GateSettings, description="Face gate thresholds")
    uplink: UplinkSettings = Field(default_factory=UplinkSettings, description="Frame uplink tuning")
    recording: RecordingSettings = Field(default_factory=RecordingSettings, description="Recording countdown")
    retriever: RetrieverSettings = Field(default_factory=RetrieverSettings, description="Result polling")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera pump settings")

    @field_validator("backend_api_url", mode="before")
    @classmethod
    def _strip_api_url(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @model_validator(mode="after")
    def _derive_ws_url(self) -> "Settings":
        if not self.backend_ws_url:
            base = self.backend_api_url
            if base.startswith("https://"):
                base = "wss://" + base[len("https://"):]
            elif base.startswith("http://"):
                base = "ws://" + base[len("http://"):]
            self.backend_ws_url = base
        else:
            self.backend_ws_url = self.backend_ws_url.rstrip("/")
        return self

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
