"""Shared controller state definitions for the liveness client."""
from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


class SessionState(str, enum.Enum):
    """
    Session states in chronological order:

    1. WAITING_FOR_FACE   - Gate counting qualifying detections
    2. FACE_DETECTED      - Gate satisfied, handshake about to start
    3. SESSION_STARTING   - Handshake + streaming connection in flight
    4. SESSION_ACTIVE     - Streaming frames (recording) / awaiting completion
    5. SESSION_COMPLETED  - Server finished, retrieving results → WAITING_FOR_FACE

    Errors are not a state: they surface on ControllerState.error and the
    controller falls back to WAITING_FOR_FACE.
    """
    WAITING_FOR_FACE = "waiting_for_face"
    FACE_DETECTED = "face_detected"
    SESSION_STARTING = "session_starting"
    SESSION_ACTIVE = "session_active"
    SESSION_COMPLETED = "session_completed"


@dataclass
class ControllerState:
    """Snapshot handed to the presentation layer. Only the controller mutates it."""

    session_state: SessionState = SessionState.WAITING_FOR_FACE
    is_recording: bool = False
    is_connected: bool = False
    frame_count: int = 0
    frames_sent: int = 0
    liveness_score: int = 0
    decision: Optional[str] = None
    blink_count: int = 0
    time_left: int = 15
    current_fps: float = 0.0
    server_fps: float = 0.0
    face_detected: bool = False
    face_confidence: float = 0.0
    session_id: Optional[str] = None
    error: Optional[str] = None
    saved_file_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["session_state"] = self.session_state.value
        return data


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    state: ControllerState
    data: Dict[str, Any] = field(default_factory=dict)


__all__ = ["SessionState", "ControllerState", "ControllerEvent"]
