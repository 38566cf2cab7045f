"""
Pytest configuration and shared fixtures.
"""

import asyncio
import json
from typing import List, Optional

import httpx
import pytest

from liveness_client.backend.http_client import LivenessHttpClient
from liveness_client.config import Settings


class FakeConnection:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: List[str] = []
        self.closed = False
        self.accept = True
        self._inbox: "asyncio.Queue[object]" = asyncio.Queue()

    def push(self, message: object) -> None:
        if not isinstance(message, (str, bytes, Exception)) and message is not None:
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def finish(self) -> None:
        self._inbox.put_nowait(None)

    async def send(self, message: str) -> None:
        if self.closed or not self.accept:
            raise RuntimeError("transport rejected message")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> object:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Connect factory handing out FakeConnections and recording URIs."""

    def __init__(self) -> None:
        self.uris: List[str] = []
        self.connections: List[FakeConnection] = []
        self.fail_with: Optional[Exception] = None

    async def __call__(self, uri: str) -> FakeConnection:
        self.uris.append(uri)
        if self.fail_with is not None:
            raise self.fail_with
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeLivenessService:
    """httpx.MockTransport handler emulating the liveness REST API."""

    def __init__(self) -> None:
        self.start_status = 200
        self.session_id = "abc"
        self.result_statuses: List[int] = [200]
        self.result_content = b"PK\x03\x04results"
        self.result_headers = {"content-disposition": 'attachment; filename="LivenessResults_abc.xlsx"'}
        self.requests: List[httpx.Request] = []
        self.stop_calls: List[tuple] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/start-session":
            if self.start_status != 200:
                return httpx.Response(self.start_status, text="unavailable")
            return httpx.Response(
                200, json={"session_id": self.session_id, "status": "created", "message": "Session started"}
            )

        if request.method == "POST" and path.startswith("/stop-session/"):
            session_id = path.rsplit("/", 1)[-1]
            self.stop_calls.append((session_id, request.url.params.get("keep")))
            return httpx.Response(200, json={"message": f"Session {session_id} stopped"})

        if request.method == "GET" and path.endswith("/results"):
            code = self.result_statuses.pop(0) if self.result_statuses else 200
            if code == 200:
                return httpx.Response(200, content=self.result_content, headers=self.result_headers)
            return httpx.Response(code, json={"detail": "Processing not completed"})

        if request.method == "GET" and path.startswith("/session/"):
            return httpx.Response(
                200,
                json={
                    "status": "processing",
                    "created_at": "2024-01-01T00:00:00",
                    "frame_count": 42,
                    "is_active": True,
                    "current_fps": 24.5,
                },
            )

        return httpx.Response(404)

    def count(self, method: str, prefix: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path.startswith(prefix))


@pytest.fixture
def settings(tmp_path):
    """Settings with a temporary results directory and no env file."""
    return Settings(
        _env_file=None,
        backend_api_url="http://liveness.test",
        results_directory=tmp_path / "results",
        log_directory=tmp_path / "logs",
    )


@pytest.fixture
def service():
    return FakeLivenessService()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_http(settings, service):
    """Factory for a LivenessHttpClient bound to the fake service (create inside a loop)."""

    def _make() -> LivenessHttpClient:
        return LivenessHttpClient(settings, transport=httpx.MockTransport(service))

    return _make
