"""Outbound frame throttling and the recording countdown."""
from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Optional

from .backend.ws_client import StreamConnectionManager
from .config import RecordingSettings, UplinkSettings
from .errors import SendFailure
from .models import OutboundFrame

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class FrameUplink:
    """Sends at most one frame per ``frame_interval``; late frames are dropped, never queued."""

    def __init__(
        self,
        settings: UplinkSettings,
        connection: StreamConnectionManager,
        *,
        clock: Clock = time.monotonic,
        on_sent: Optional[Callable[[int], None]] = None,
        on_fps: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.settings = settings
        self._connection = connection
        self._clock = clock
        self._on_sent = on_sent
        self._on_fps = on_fps

        self._active = False
        self._activation = 0
        self._last_sent_at: Optional[float] = None
        self._window_started_at = 0.0
        self._frames_in_window = 0
        self._frames_sent = 0
        self._current_fps = 0.0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def frames_sent(self) -> int:
        return self._frames_sent

    @property
    def current_fps(self) -> float:
        return self._current_fps

    @property
    def frame_interval(self) -> float:
        return self.settings.frame_interval_s

    def activate(self, now: Optional[float] = None) -> None:
        self._activation += 1
        self._active = True
        self._last_sent_at = None
        self._window_started_at = self._clock() if now is None else now
        self._frames_in_window = 0
        self._frames_sent = 0
        self._current_fps = 0.0
        logger.info("Frame uplink active (interval=%.0fms)", self.frame_interval * 1000)

    def deactivate(self) -> None:
        if self._active:
            logger.info("Frame uplink stopped after %d frames", self._frames_sent)
        self._active = False
        self._activation += 1

    async def offer(self, frame: OutboundFrame, now: Optional[float] = None) -> bool:
        """Transmit ``frame`` if the throttle allows it. Returns whether it was sent."""
        if not self._active:
            return False
        if now is None:
            now = self._clock()

        if self._last_sent_at is not None and now - self._last_sent_at < self.frame_interval:
            self._roll_window(now)
            return False
        self._last_sent_at = now

        activation = self._activation
        encoded = base64.b64encode(frame.payload).decode("ascii")
        try:
            if not await self._connection.send(encoded):
                raise SendFailure("Failed to send frame", log_message=f"frame of {len(frame.payload)} bytes rejected")
        except SendFailure as exc:
            logger.warning("Frame dropped: %s", exc)
            return False

        if activation != self._activation:
            # stopped or reset while the send was in flight
            return False

        self._frames_sent += 1
        self._frames_in_window += 1
        if self._frames_sent % 30 == 0:
            logger.debug("Sent frame %d", self._frames_sent)
        if self._on_sent:
            self._on_sent(self._frames_sent)
        self._roll_window(now)
        return True

    def _roll_window(self, now: float) -> None:
        elapsed = now - self._window_started_at
        if elapsed < self.settings.measurement_window_s:
            return
        self._current_fps = self._frames_in_window / elapsed
        self._frames_in_window = 0
        self._window_started_at = now
        if self._on_fps:
            self._on_fps(self._current_fps)


class RecordingCountdown:
    """Publishes ``duration .. 0`` in unit steps, then fires ``on_expire`` once."""

    def __init__(
        self,
        settings: RecordingSettings,
        *,
        on_tick: Callable[[int], None],
        on_expire: Callable[[], None],
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(), name="recording-countdown")

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        for remaining in range(self.settings.duration_seconds, -1, -1):
            self._on_tick(remaining)
            if remaining == 0:
                logger.info("Recording time completed")
                self._on_expire()
                return
            await self._sleep(self.settings.tick_seconds)


__all__ = ["FrameUplink", "RecordingCountdown"]
