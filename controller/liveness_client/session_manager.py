"""Session orchestration for the liveness client.

All controller state lives on one ``ControllerState`` and is only mutated
by the consumer task draining ``self._events``. Network work (handshake,
connect, results download, close) runs in child tasks that post their
outcome back onto the same queue tagged with the session epoch; ``reset``
bumps the epoch so late outcomes of a cancelled session are dropped.
"""
from __future__ import annotations

import asyncio
import logging
import time
from asyncio import QueueEmpty
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Coroutine, List, Optional, Set

from .backend.http_client import LivenessHttpClient
from .backend.messages import STOP_COMMAND
from .backend.ws_client import (
    CompletionReceived,
    ConnectFactory,
    ConnectionClosed,
    ConnectionErrored,
    ConnectionOpened,
    ConnectionState,
    FrameResultReceived,
    StreamConnectionManager,
)
from .config import Settings, get_settings
from .errors import FetchError, HandshakeError, SendFailure
from .gate import GateEvaluator
from .models import DetectionSample, GateDecision, OutboundFrame, ResultArtifact, SessionStatus
from .retriever import ResultRetriever, Sleep
from .state import ControllerEvent, ControllerState, SessionState
from .storage import ArtifactStore
from .uplink import FrameUplink, RecordingCountdown

logger = logging.getLogger(__name__)


# ============================================================
# Internal events (only ever consumed by the controller loop)
# ============================================================

@dataclass(frozen=True)
class _Detection:
    sample: DetectionSample


@dataclass(frozen=True)
class _Command:
    name: str


@dataclass(frozen=True)
class _HandshakeSucceeded:
    epoch: int
    session_id: str


@dataclass(frozen=True)
class _HandshakeFailed:
    epoch: int
    message: str


@dataclass(frozen=True)
class _CountdownTick:
    epoch: int
    remaining: int


@dataclass(frozen=True)
class _CountdownExpired:
    epoch: int


@dataclass(frozen=True)
class _UplinkProgress:
    epoch: int
    frames_sent: Optional[int] = None
    fps: Optional[float] = None


@dataclass(frozen=True)
class _ArtifactSaved:
    epoch: int
    path: Path


@dataclass(frozen=True)
class _RetrievalFailed:
    epoch: int
    message: str


@dataclass(frozen=True)
class _SessionFinished:
    epoch: int


@dataclass(frozen=True)
class _StatusFetched:
    epoch: int
    status: SessionStatus


class SessionController:
    """Gate → handshake → stream → results → close, with reset at any point."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        http_client: Optional[LivenessHttpClient] = None,
        ws_connect: Optional[ConnectFactory] = None,
        store: Optional[ArtifactStore] = None,
        sleep: Sleep = asyncio.sleep,
        countdown_sleep: Optional[Sleep] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._state = ControllerState(time_left=self.settings.recording.duration_seconds)
        self._ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []
        self._last_broadcast: Optional[dict] = None

        self._sleep = sleep
        self._countdown_sleep = countdown_sleep or sleep
        self._gate = GateEvaluator(self.settings.gate)
        self._http = http_client or LivenessHttpClient(self.settings)
        self._connection = StreamConnectionManager(self.settings, self._events, connect=ws_connect)
        self._uplink = FrameUplink(
            self.settings.uplink,
            self._connection,
            clock=clock,
            on_sent=self._on_frame_sent,
            on_fps=self._on_fps_measured,
        )
        self._retriever = ResultRetriever(self.settings.retriever, self._http, sleep=sleep)
        self._store = store or ArtifactStore(self.settings.results_directory)

        self._epoch = 0
        self._countdown: Optional[RecordingCountdown] = None
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._closing: Set[asyncio.Task[Any]] = set()
        self._reconnect_task: Optional[asyncio.Task[Any]] = None
        self._stop_sent = False
        self._close_issued = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state.session_state

    @property
    def session_id(self) -> Optional[str]:
        return self._state.session_id

    @property
    def gate(self) -> GateEvaluator:
        return self._gate

    @property
    def connection(self) -> StreamConnectionManager:
        return self._connection

    @property
    def uplink(self) -> FrameUplink:
        return self._uplink

    def snapshot(self) -> ControllerState:
        return replace(self._state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        logger.info("Starting session controller")
        self._loop_task = asyncio.create_task(self._run(), name="session-controller")

    async def stop(self) -> None:
        logger.info("Stopping session controller")
        await self.reset_session()
        pending = [task for task in self._tasks | self._closing if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=self.settings.http_timeout_s)
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        await self._cancel_tasks()
        await self._http.aclose()
        logger.info("Session controller stopped")

    def register_ui(self, maxsize: int = 4) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=maxsize)
        self._ui_subscribers.append(queue)
        queue.put_nowait(ControllerEvent(type="state", state=self.snapshot()))
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Commands (presentation layer / collaborators)
    # ------------------------------------------------------------------

    def on_detection(self, sample: DetectionSample) -> None:
        self._post(_Detection(sample))

    def start_recording(self) -> None:
        self._post(_Command("start_recording"))

    def stop_recording(self) -> None:
        self._post(_Command("stop_recording"))

    async def send_frame(self, payload: bytes) -> bool:
        """Offer one encoded frame to the uplink. Returns whether it was sent."""
        if not self._state.is_recording or self._state.session_id is None:
            return False
        if not self._connection.is_open:
            if self._connection.state is ConnectionState.CLOSED:
                logger.info("Stream not connected, attempting to reconnect")
                self._ensure_reconnect()
            return False
        return await self._uplink.offer(OutboundFrame(payload))

    async def reset_session(self) -> None:
        """Abandon the current session immediately and return to WAITING_FOR_FACE."""
        session_id = self._state.session_id
        logger.info("🔄 Resetting session %s", session_id or "-")

        self._epoch += 1
        self._cancel_countdown()
        self._uplink.deactivate()
        for task in list(self._tasks):
            task.cancel()
        self._reconnect_task = None
        self._gate.reset()

        self._state = ControllerState(
            time_left=self.settings.recording.duration_seconds,
            face_detected=self._state.face_detected,
            face_confidence=self._state.face_confidence,
        )
        self._stop_sent = False
        close_session = session_id is not None and not self._close_issued
        self._close_issued = False
        self._broadcast_if_changed()

        await self._connection.close("Session reset")
        if close_session:
            self._spawn(self._http.close(session_id, keep=False), name="session-close-on-reset")

    async def refresh_status(self) -> Optional[SessionStatus]:
        session_id = self._state.session_id
        if session_id is None:
            return None
        status = await self._http.get_status(session_id)
        if status is not None:
            self._post(_StatusFetched(self._epoch, status))
        return status

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        logger.info("Session controller loop started in %s", self._state.session_state.value)
        while True:
            event = await self._events.get()
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error handling controller event %r", event)
            finally:
                self._events.task_done()
            self._broadcast_if_changed()

    async def _handle(self, event: Any) -> None:
        if isinstance(event, _Detection):
            await self._handle_detection(event.sample)
        elif isinstance(event, _Command):
            await self._handle_command(event.name)
        elif isinstance(event, (ConnectionOpened, ConnectionErrored, ConnectionClosed, FrameResultReceived, CompletionReceived)):
            await self._handle_connection_event(event)
        elif getattr(event, "epoch", None) != self._epoch:
            logger.debug("Dropping stale event %r", event)
        elif isinstance(event, _HandshakeSucceeded):
            self._handle_handshake_success(event.session_id)
        elif isinstance(event, _HandshakeFailed):
            self._fail_to_waiting(event.message)
        elif isinstance(event, _CountdownTick):
            if self._state.is_recording:
                self._state.time_left = event.remaining
        elif isinstance(event, _CountdownExpired):
            logger.info("⏱️ Recording time completed, stopping")
            await self._stop_recording()
        elif isinstance(event, _UplinkProgress):
            if event.frames_sent is not None:
                self._state.frames_sent = event.frames_sent
            if event.fps is not None:
                self._state.current_fps = round(event.fps, 1)
        elif isinstance(event, _ArtifactSaved):
            self._state.saved_file_path = str(event.path)
        elif isinstance(event, _RetrievalFailed):
            self._state.error = event.message
        elif isinstance(event, _SessionFinished):
            self._finish_session()
        elif isinstance(event, _StatusFetched):
            self._state.server_fps = event.status.current_fps
            if event.status.frame_count > self._state.frame_count:
                self._state.frame_count = event.status.frame_count
        else:
            logger.warning("Unknown controller event %r", event)

    async def _handle_detection(self, sample: DetectionSample) -> None:
        self._state.face_detected = sample.detected
        self._state.face_confidence = sample.confidence

        decision = self._gate.on_sample(sample, session_active=self._state.is_recording)
        if decision is GateDecision.REQUEST_SESSION_START:
            if self._state.session_state is SessionState.WAITING_FOR_FACE and self._state.session_id is None:
                logger.info("👤 [FACE_TRIGGER] Face detected - starting session")
                self._state.session_state = SessionState.FACE_DETECTED
                self._broadcast_if_changed()
                self._begin_session()
        elif decision is GateDecision.ABORT_ACTIVE_SESSION:
            logger.warning("👤 [FACE_TRIGGER] Face lost - stopping recording")
            self._state.error = "Face lost - recording stopped"
            await self._stop_recording()

    async def _handle_command(self, name: str) -> None:
        if name == "start_recording":
            if self._state.session_id is None:
                if self._state.session_state is SessionState.WAITING_FOR_FACE:
                    logger.info("No session ID, starting new session")
                    self._begin_session()
                return
            if not self._connection.is_open:
                if self._connection.state is ConnectionState.CONNECTING:
                    logger.debug("Stream connect in progress, ignoring start_recording")
                    return
                logger.info("Stream not connected, reconnecting")
                self._ensure_reconnect()
                return
            if self._state.session_state is SessionState.SESSION_ACTIVE and not self._state.is_recording and not self._stop_sent:
                self._begin_recording()
        elif name == "stop_recording":
            await self._stop_recording()
        else:
            logger.warning("Unknown command %s", name)

    async def _handle_connection_event(self, event: Any) -> None:
        if event.generation != self._connection.generation:
            logger.debug("Dropping event of replaced connection: %r", event)
            return

        if isinstance(event, ConnectionOpened):
            self._state.is_connected = True
            if self._state.session_state is SessionState.SESSION_STARTING:
                self._state.session_state = SessionState.SESSION_ACTIVE
                logger.info("🎬 [SESSION_START] Session %s active", event.session_id)
                self._begin_recording()
        elif isinstance(event, ConnectionErrored):
            self._state.is_connected = False
            if self._state.session_state is SessionState.SESSION_STARTING:
                await self._abandon_session(event.message)
            else:
                logger.warning("Stream error mid-session: %s", event.message)
                self._state.error = event.message
        elif isinstance(event, ConnectionClosed):
            logger.info("Stream closed: %s", event.reason)
            self._state.is_connected = False
        elif isinstance(event, FrameResultReceived):
            result = event.result
            if result.frame_number >= self._state.frame_count:
                self._state.frame_count = result.frame_number
            self._state.liveness_score = int(result.liveness_score)
            self._state.decision = result.decision
            self._state.blink_count = result.blink_count
            self._state.server_fps = result.current_fps
        elif isinstance(event, CompletionReceived):
            self._handle_completion()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _begin_session(self) -> None:
        self._state = ControllerState(
            session_state=SessionState.SESSION_STARTING,
            time_left=self.settings.recording.duration_seconds,
            face_detected=self._state.face_detected,
            face_confidence=self._state.face_confidence,
        )
        self._stop_sent = False
        self._close_issued = False
        logger.info("🎬 [SESSION_START] Requesting new session")
        self._spawn(self._open_session(self._epoch), name="session-handshake")

    def _handle_handshake_success(self, session_id: str) -> None:
        self._state.session_id = session_id
        logger.info("Session started successfully with ID: %s", session_id)
        self._reconnect_task = self._spawn(self._connection.connect(session_id), name="session-connect")

    def _begin_recording(self) -> None:
        duration = self.settings.recording.duration_seconds
        logger.info("🔴 Recording started (%ds) for session %s", duration, self._state.session_id)
        self._state.is_recording = True
        self._state.time_left = duration
        self._stop_sent = False
        self._uplink.activate()

        epoch = self._epoch
        self._cancel_countdown()
        self._countdown = RecordingCountdown(
            self.settings.recording,
            on_tick=lambda remaining: self._post(_CountdownTick(epoch, remaining)),
            on_expire=lambda: self._post(_CountdownExpired(epoch)),
            sleep=self._countdown_sleep,
        )
        self._countdown.start()

    async def _stop_recording(self) -> None:
        if not self._state.is_recording:
            return
        self._state.is_recording = False
        self._cancel_countdown()
        self._uplink.deactivate()
        self._stop_sent = True

        epoch = self._epoch
        try:
            if not await self._connection.send(STOP_COMMAND):
                raise SendFailure("Failed to send stop signal")
            logger.info("Stop signal sent to stream")
        except SendFailure as exc:
            logger.error("%s", exc)
            if epoch == self._epoch:
                self._state.error = exc.user_message

    def _handle_completion(self) -> None:
        if self._state.session_state is not SessionState.SESSION_ACTIVE or self._state.session_id is None:
            logger.debug("Completion outside an active session ignored")
            return
        logger.info("✅ Session completed, getting results")
        self._state.session_state = SessionState.SESSION_COMPLETED
        self._state.is_recording = False
        self._cancel_countdown()
        self._uplink.deactivate()
        self._spawn(self._retrieve_and_close(self._epoch, self._state.session_id), name="session-results")

    def _finish_session(self) -> None:
        logger.info("🏁 [SESSION_END] Session %s ended, back to WAITING_FOR_FACE", self._state.session_id)
        self._state.session_state = SessionState.WAITING_FOR_FACE
        self._state.session_id = None
        self._state.is_connected = False
        self._state.is_recording = False
        self._gate.reset()

    def _fail_to_waiting(self, message: str) -> None:
        logger.error("❌ Session failed: %s", message)
        self._cancel_countdown()
        self._uplink.deactivate()
        self._state.session_state = SessionState.WAITING_FOR_FACE
        self._state.session_id = None
        self._state.is_recording = False
        self._state.is_connected = False
        self._state.error = message
        self._gate.reset()

    async def _abandon_session(self, message: str) -> None:
        session_id = self._state.session_id
        self._fail_to_waiting(message)
        await self._connection.close("Connect failed")
        if session_id is not None:
            self._close_issued = True
            self._spawn(self._http.close(session_id, keep=False), name="session-close")

    # ------------------------------------------------------------------
    # Child tasks
    # ------------------------------------------------------------------

    async def _open_session(self, epoch: int) -> None:
        try:
            session_id = await self._http.open()
        except HandshakeError as exc:
            logger.error("%s", exc)
            self._post(_HandshakeFailed(epoch, exc.user_message))
            return
        if epoch != self._epoch:
            logger.info("Session %s opened after reset, closing it", session_id)
            await self._http.close(session_id, keep=False)
            return
        self._post(_HandshakeSucceeded(epoch, session_id))

    async def _retrieve_and_close(self, epoch: int, session_id: str) -> None:
        def cancelled() -> bool:
            return epoch != self._epoch

        try:
            artifact: ResultArtifact = await self._retriever.fetch(session_id, is_cancelled=cancelled)
            path = await self._store.persist(artifact)
        except FetchError as exc:
            logger.error("%s", exc)
            self._post(_RetrievalFailed(epoch, exc.user_message))
        except OSError as exc:
            logger.error("Error saving results file: %s", exc)
            self._post(_RetrievalFailed(epoch, f"Error saving results: {exc}"))
        else:
            self._post(_ArtifactSaved(epoch, path))

        if cancelled():
            return
        await self._connection.close("Session completed")
        await self._sleep(self.settings.retriever.close_delay_s)
        if cancelled() or self._close_issued:
            return
        self._close_issued = True
        # a reset from here on must not abandon the keep-close request
        closing = asyncio.create_task(self._http.close(session_id, keep=True), name="session-close-keep")
        self._closing.add(closing)
        closing.add_done_callback(self._closing.discard)
        await asyncio.shield(closing)
        self._post(_SessionFinished(epoch))

    def _ensure_reconnect(self) -> None:
        session_id = self._state.session_id
        if session_id is None:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = self._spawn(self._connection.connect(session_id), name="session-reconnect")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _post(self, event: Any) -> None:
        self._events.put_nowait(event)

    def _on_frame_sent(self, frames_sent: int) -> None:
        self._post(_UplinkProgress(self._epoch, frames_sent=frames_sent))

    def _on_fps_measured(self, fps: float) -> None:
        self._post(_UplinkProgress(self._epoch, fps=fps))

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._log_task_failure)
        return task

    @staticmethod
    def _log_task_failure(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def _cancel_countdown(self) -> None:
        if self._countdown:
            self._countdown.cancel()
            self._countdown = None

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping session task: %s", e)

    def _broadcast_if_changed(self) -> None:
        payload = self._state.to_dict()
        if payload == self._last_broadcast:
            return
        self._last_broadcast = payload
        event = ControllerEvent(type="state", state=self.snapshot())
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)


__all__ = ["SessionController"]
