"""Error taxonomy for the liveness controller.

Every error carries a short ``user_message`` that ends up on
``ControllerState.error``; the longer log message goes to the log only.
"""
from __future__ import annotations

from typing import Optional


class LivenessClientError(RuntimeError):
    """Raised when a recoverable session step fails."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class HandshakeError(LivenessClientError):
    """Session open/close request failed."""

    @classmethod
    def start_failed(cls, detail: str) -> "HandshakeError":
        return cls("Failed to start session", log_message=f"start-session failed: {detail}")


class StreamConnectionError(LivenessClientError):
    """Streaming transport failed to open or dropped."""


class SendFailure(LivenessClientError):
    """A frame or control message was not accepted by the transport."""


class ParseError(LivenessClientError):
    """Inbound message matched neither the completion nor the per-frame shape."""

    def __init__(self, raw: str, reason: str) -> None:
        preview = raw if len(raw) <= 200 else raw[:200] + "..."
        super().__init__("Error parsing server response", log_message=f"{reason}: {preview}")
        self.raw = raw


class FetchError(LivenessClientError):
    """Result artifact could not be retrieved."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(user_message, log_message=log_message)
        self.status_code = status_code

    @classmethod
    def failed(cls, detail: str, status_code: Optional[int] = None) -> "FetchError":
        return cls("Failed to get session results", log_message=detail, status_code=status_code)


__all__ = [
    "LivenessClientError",
    "HandshakeError",
    "StreamConnectionError",
    "SendFailure",
    "ParseError",
    "FetchError",
]
