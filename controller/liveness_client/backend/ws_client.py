"""Streaming connection to the liveness service used during active sessions."""
from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, Union

import websockets

from ..config import Settings
from ..errors import ParseError
from ..models import CompletionSignal, InboundResult
from .messages import decode_message

logger = logging.getLogger(__name__)

ConnectFactory = Callable[[str], Awaitable[Any]]


class ConnectionState(str, enum.Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


# ============================================================
# Events posted to the consumer queue
# ============================================================

@dataclass(frozen=True)
class ConnectionOpened:
    generation: int
    session_id: str


@dataclass(frozen=True)
class FrameResultReceived:
    generation: int
    result: InboundResult


@dataclass(frozen=True)
class CompletionReceived:
    generation: int
    signal: CompletionSignal


@dataclass(frozen=True)
class ConnectionErrored:
    generation: int
    message: str


@dataclass(frozen=True)
class ConnectionClosed:
    generation: int
    reason: str


ConnectionEvent = Union[
    ConnectionOpened, FrameResultReceived, CompletionReceived, ConnectionErrored, ConnectionClosed
]


class StreamConnectionManager:
    """Owns the single streaming connection: connect, send, receive, close.

    Events are posted onto ``events`` in arrival order. Each carries the
    connection generation it belongs to; a new ``connect`` or a ``close``
    bumps the generation so consumers can drop events of a replaced
    connection.
    """

    def __init__(
        self,
        settings: Settings,
        events: "asyncio.Queue[Any]",
        *,
        connect: Optional[ConnectFactory] = None,
    ) -> None:
        self.settings = settings
        self._events = events
        self._connect_factory = connect or self._default_connect
        self._conn: Optional[Any] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._state = ConnectionState.CLOSED
        self._session_id: Optional[str] = None
        self._generation = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def generation(self) -> int:
        return self._generation

    async def connect(self, session_id: str) -> bool:
        """Open a connection for ``session_id``, closing any existing one first.

        Returns whether the connection is open. Failures are reported through
        a ConnectionErrored event; retrying is the caller's decision.
        """
        await self.close("Reconnecting")

        self._generation += 1
        generation = self._generation
        self._session_id = session_id
        self._state = ConnectionState.CONNECTING
        uri = self.build_uri(session_id)
        logger.info("Connecting to liveness stream %s", uri)

        try:
            conn = await asyncio.wait_for(self._connect_factory(uri), timeout=self.settings.ws_open_timeout_s)
        except asyncio.CancelledError:
            if generation == self._generation:
                self._state = ConnectionState.CLOSED
            raise
        except Exception as exc:
            logger.error("Failed to connect to liveness stream: %s", exc)
            if generation == self._generation:
                self._state = ConnectionState.CLOSED
            self._emit(ConnectionErrored(generation, f"WebSocket connection error: {exc}"))
            return False

        if generation != self._generation:
            # closed or replaced while the handshake was in flight
            await self._safe_close(conn, "Superseded")
            return False

        self._conn = conn
        self._state = ConnectionState.OPEN
        logger.info("Liveness stream connected for session %s", session_id)
        self._emit(ConnectionOpened(generation, session_id))
        self._listener_task = asyncio.create_task(
            self._listen(generation, conn), name=f"liveness-ws-listener-{generation}"
        )
        return True

    async def close(self, reason: str = "Session stopped") -> None:
        """Close the current connection (no-op when already closed)."""
        conn = self._conn
        task = self._listener_task
        was_open = self._state is not ConnectionState.CLOSED
        generation = self._generation

        self._generation += 1
        self._state = ConnectionState.CLOSED
        self._conn = None
        self._listener_task = None

        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during listener task cleanup: %s", e)
        if conn is not None:
            await self._safe_close(conn, reason)
        if was_open:
            logger.info("Liveness stream closed: %s", reason)
            self._emit(ConnectionClosed(generation, reason))

    async def send(self, message: str) -> bool:
        """Hand ``message`` to the transport; False means it was not accepted."""
        conn = self._conn
        if self._state is not ConnectionState.OPEN or conn is None:
            logger.warning("Cannot send message - liveness stream not connected")
            return False
        try:
            await conn.send(message)
            return True
        except websockets.ConnectionClosed:
            logger.warning("Cannot send message - liveness stream closed")
        except Exception as e:
            logger.error("Failed to send stream message: %s", e)
        return False

    async def _listen(self, generation: int, conn: Any) -> None:
        try:
            async for message in conn:
                try:
                    decoded = decode_message(message)
                except ParseError as exc:
                    logger.warning("Ignoring stream message: %s", exc)
                    continue

                if isinstance(decoded, CompletionSignal):
                    logger.info("Session completed by server")
                    self._emit(CompletionReceived(generation, decoded))
                else:
                    self._emit(FrameResultReceived(generation, decoded))
            self._emit(ConnectionClosed(generation, "Closed by server"))
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Liveness stream closed cleanly")
            self._emit(ConnectionClosed(generation, "Closed by server"))
        except websockets.ConnectionClosedError as exc:
            logger.warning("Liveness stream closed: %s", exc)
            self._emit(ConnectionErrored(generation, f"WebSocket connection error: {exc}"))
        except Exception as exc:
            logger.exception("Liveness stream listener crashed")
            self._emit(ConnectionErrored(generation, f"WebSocket connection error: {exc}"))
        finally:
            if generation == self._generation:
                self._state = ConnectionState.CLOSED
                self._conn = None
                self._listener_task = None
                await self._safe_close(conn, "Listener stopped")

    def _emit(self, event: ConnectionEvent) -> None:
        self._events.put_nowait(event)

    async def _safe_close(self, conn: Any, reason: str) -> None:
        try:
            await conn.close(code=1000, reason=reason)
        except Exception as e:
            logger.warning("Error closing stream connection: %s", e)

    async def _default_connect(self, uri: str) -> Any:
        return await websockets.connect(uri, ping_interval=None, ping_timeout=None, max_size=None)

    def build_uri(self, session_id: str) -> str:
        base = (self.settings.backend_ws_url or "").rstrip("/")
        return f"{base}/ws/process/{session_id}"


__all__ = [
    "ConnectionState",
    "StreamConnectionManager",
    "ConnectionOpened",
    "FrameResultReceived",
    "CompletionReceived",
    "ConnectionErrored",
    "ConnectionClosed",
    "ConnectionEvent",
]
