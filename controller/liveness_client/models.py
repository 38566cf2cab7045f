"""Data models shared by the gate, the backend clients and the controller."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================
# Local signals
# ============================================================

@dataclass(frozen=True)
class DetectionSample:
    """One face-detector verdict for one analysed image."""

    detected: bool
    confidence: float = 0.0

    def qualifies(self, min_confidence: float) -> bool:
        return self.detected and self.confidence > min_confidence


class GateDecision(str, enum.Enum):
    CONTINUE = "continue"
    REQUEST_SESSION_START = "request_session_start"
    ABORT_ACTIVE_SESSION = "abort_active_session"


@dataclass(frozen=True)
class OutboundFrame:
    """Encoded image (JPEG bytes); its sequence is implied by send order."""

    payload: bytes


@dataclass(frozen=True)
class ResultArtifact:
    filename: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


# ============================================================
# Wire models (liveness service)
# ============================================================

class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SessionStartResponse(_WireModel):
    session_id: str = Field(..., min_length=1)
    status: Optional[str] = None
    message: Optional[str] = None


class StopSessionResponse(_WireModel):
    message: Optional[str] = None


class SessionStatus(_WireModel):
    status: str
    created_at: Optional[str] = None
    frame_count: int = 0
    is_active: bool = False
    current_fps: float = 0.0


class InboundResult(_WireModel):
    """Per-frame result streamed back by the service."""

    frame_number: int
    liveness_score: float
    decision: str = ""
    blink_detected: bool = False
    blink_count: int = 0
    current_fps: float = 0.0


class CompletionSignal(_WireModel):
    """Terminal message of the streaming phase."""

    status: Literal["completed"]


__all__ = [
    "DetectionSample",
    "GateDecision",
    "OutboundFrame",
    "ResultArtifact",
    "SessionStartResponse",
    "StopSessionResponse",
    "SessionStatus",
    "InboundResult",
    "CompletionSignal",
]
