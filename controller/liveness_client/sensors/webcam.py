"""
Webcam capture pump.

Reads the local camera, runs face detection on every analysed image and
feeds the controller: each image becomes a DetectionSample, and while the
controller is recording the same image is JPEG-encoded and offered as a
frame.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import numpy as np

# Optional deps
try:
    import cv2  # type: ignore
except Exception:
    cv2 = None

try:
    import mediapipe as mp  # type: ignore
except Exception:
    mp = None

from ..config import Settings
from ..models import DetectionSample

if TYPE_CHECKING:
    from ..session_manager import SessionController

logger = logging.getLogger(__name__)


@dataclass
class CapturedFrame:
    timestamp: float
    color_image: np.ndarray
    sample: DetectionSample


def encode_jpeg(image: np.ndarray, quality: int = 90) -> Optional[bytes]:
    """Encode a BGR image as JPEG bytes."""
    if cv2 is None:
        return None
    try:
        ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    except cv2.error as e:
        logger.warning("JPEG encode failed: %s", e)
        return None
    return buf.tobytes() if ok else None


class FaceDetector:
    """MediaPipe short-range face detection reduced to detected/confidence."""

    def __init__(self, min_confidence: float = 0.5) -> None:
        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=0,
            min_detection_confidence=min_confidence,
        )

    def detect(self, bgr_image: np.ndarray) -> DetectionSample:
        rgb = cv2.cvtColor(bgr_image, cv2.COLOR_BGR2RGB)
        try:
            result = self._detector.process(rgb)
        except Exception as e:
            logger.warning("Face detection error: %s", e)
            return DetectionSample(detected=False, confidence=0.0)
        if not result or not result.detections:
            return DetectionSample(detected=False, confidence=0.0)
        best = max(float(d.score[0]) for d in result.detections if d.score)
        return DetectionSample(detected=True, confidence=best)

    def close(self) -> None:
        self._detector.close()


class CameraPump:
    """Captures at the uplink cadence and drives the controller."""

    def __init__(self, controller: "SessionController", settings: Settings) -> None:
        self.controller = controller
        self.settings = settings
        self.enable_hardware = bool(cv2 is not None and mp is not None)
        self._cap = None
        self._detector: Optional[FaceDetector] = None
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self._loop_task:
            return
        if not self.enable_hardware:
            logger.warning("OpenCV or MediaPipe not available - camera pump disabled")
            return
        if not await asyncio.to_thread(self._open):
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._capture_loop(), name="camera-pump")
        logger.info("Camera pump started (device=%d)", self.settings.camera.device_index)

    async def stop(self) -> None:
        if not self._loop_task:
            return
        self._stop_event.set()
        await self._loop_task
        self._loop_task = None
        await asyncio.to_thread(self._release)
        logger.info("Camera pump stopped")

    def _open(self) -> bool:
        camera = self.settings.camera
        self._cap = cv2.VideoCapture(camera.device_index)
        if not self._cap.isOpened():
            logger.error("Failed to open webcam %d", camera.device_index)
            self._cap = None
            return False
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, camera.resolution_width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, camera.resolution_height)
        self._detector = FaceDetector(camera.face_confidence)
        return True

    def _release(self) -> None:
        if self._cap:
            self._cap.release()
            self._cap = None
        if self._detector:
            self._detector.close()
            self._detector = None

    def _capture(self) -> Optional[CapturedFrame]:
        if not self._cap or not self._detector:
            return None
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        return CapturedFrame(timestamp=time.time(), color_image=frame, sample=self._detector.detect(frame))

    async def _capture_loop(self) -> None:
        interval = self.settings.uplink.frame_interval_s
        quality = self.settings.uplink.jpeg_quality
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                captured = await asyncio.to_thread(self._capture)
                if captured is not None:
                    self.controller.on_detection(captured.sample)
                    if self.controller.snapshot().is_recording:
                        payload = await asyncio.to_thread(encode_jpeg, captured.color_image, quality)
                        if payload:
                            await self.controller.send_frame(payload)
                elapsed = time.monotonic() - started
                await asyncio.sleep(max(interval - elapsed, 0.0))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Camera pump crashed")
        finally:
            self._stop_event.clear()


__all__ = ["CameraPump", "FaceDetector", "encode_jpeg"]
