"""HTTP client helpers for the liveness service REST endpoints."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import HandshakeError
from ..models import SessionStartResponse, SessionStatus, StopSessionResponse

logger = logging.getLogger(__name__)


class ResultsOutcome(str, enum.Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    FAILED = "failed"


@dataclass
class ResultsResponse:
    """Classified outcome of a single ``GET /session/{id}/results``."""

    outcome: ResultsOutcome
    status_code: Optional[int] = None
    content: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    detail: str = ""


class LivenessHttpClient:
    """Thin wrapper around the liveness service REST API."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.backend_api_url,
            timeout=self.settings.http_timeout_s,
            headers={"accept": "application/json"},
            transport=transport,
        )

    async def open(self) -> str:
        """Create a server-side session and return its identifier."""
        try:
            logger.info("liveness.start_session: requesting new session")
            response = await self._client.post("/start-session", content=b"")
            response.raise_for_status()
            data = SessionStartResponse.model_validate(response.json())
        except httpx.TimeoutException as e:
            raise HandshakeError.start_failed("request timeout") from e
        except httpx.HTTPStatusError as e:
            raise HandshakeError.start_failed(f"HTTP {e.response.status_code} - {e.response.text}") from e
        except httpx.HTTPError as e:
            raise HandshakeError.start_failed(f"network error - {e}") from e
        except (ValueError, ValidationError) as e:
            raise HandshakeError.start_failed(f"malformed response - {e}") from e

        logger.info("liveness.start_session: session %s created (%s)", data.session_id, data.message or data.status)
        return data.session_id

    async def close(self, session_id: str, *, keep: bool = False) -> bool:
        """Terminate a session. Best-effort: failures are logged, never raised."""
        try:
            logger.info("liveness.stop_session: stopping %s (keep=%s)", session_id, keep)
            response = await self._client.post(
                f"/stop-session/{session_id}",
                params={"keep": "true" if keep else "false"},
                content=b"",
            )
            response.raise_for_status()
            try:
                message = StopSessionResponse.model_validate(response.json()).message
            except (ValueError, ValidationError):
                message = None
            logger.info("liveness.stop_session: %s stopped: %s", session_id, message)
            return True
        except httpx.TimeoutException:
            logger.error("liveness.stop_session: request timeout")
        except httpx.HTTPStatusError as e:
            logger.error("liveness.stop_session: HTTP %d - %s", e.response.status_code, e.response.text)
        except httpx.HTTPError as e:
            logger.error("liveness.stop_session: network error - %s", e)
        return False

    async def get_status(self, session_id: str) -> Optional[SessionStatus]:
        try:
            response = await self._client.get(f"/session/{session_id}")
            response.raise_for_status()
            status = SessionStatus.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            logger.error("liveness.session_status: HTTP %d - %s", e.response.status_code, e.response.text)
            return None
        except httpx.HTTPError as e:
            logger.error("liveness.session_status: network error - %s", e)
            return None
        except (ValueError, ValidationError) as e:
            logger.error("liveness.session_status: malformed response - %s", e)
            return None
        logger.info(
            "Session status: %s, Active: %s, Frames: %d, FPS: %.1f",
            status.status, status.is_active, status.frame_count, status.current_fps,
        )
        return status

    async def fetch_results_once(self, session_id: str) -> ResultsResponse:
        """One results request; 400 means the server is still processing."""
        try:
            response = await self._client.get(f"/session/{session_id}/results")
        except httpx.HTTPError as e:
            return ResultsResponse(ResultsOutcome.FAILED, detail=f"network error - {e}")

        if response.status_code == 400:
            return ResultsResponse(ResultsOutcome.NOT_READY, status_code=400, detail=response.text)
        if response.is_success:
            return ResultsResponse(
                ResultsOutcome.READY,
                status_code=response.status_code,
                content=response.content,
                headers=dict(response.headers),
            )
        return ResultsResponse(
            ResultsOutcome.FAILED,
            status_code=response.status_code,
            detail=f"HTTP {response.status_code} - {response.text}",
        )

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


__all__ = ["LivenessHttpClient", "ResultsOutcome", "ResultsResponse"]
