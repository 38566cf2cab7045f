"""Face-presence gate that decides when a session may start."""
from __future__ import annotations

import logging

from .config import GateSettings
from .models import DetectionSample, GateDecision

logger = logging.getLogger(__name__)


class GateEvaluator:
    """Counts consecutive qualifying detections.

    Before a session: ``required_hits`` qualifying samples in a row produce a
    single REQUEST_SESSION_START; counting then stops until ``reset()``.
    During a session: one sample without a face produces ABORT_ACTIVE_SESSION.
    """

    def __init__(self, settings: GateSettings | None = None) -> None:
        self.settings = settings or GateSettings()
        self._consecutive_hits = 0
        self._triggered = False

    @property
    def consecutive_hits(self) -> int:
        return self._consecutive_hits

    @property
    def triggered(self) -> bool:
        return self._triggered

    def on_sample(self, sample: DetectionSample, *, session_active: bool = False) -> GateDecision:
        if session_active:
            if not sample.detected:
                logger.info("Face lost during active session (confidence=%.2f)", sample.confidence)
                return GateDecision.ABORT_ACTIVE_SESSION
            return GateDecision.CONTINUE

        if self._triggered:
            return GateDecision.CONTINUE

        if not sample.qualifies(self.settings.min_confidence):
            if self._consecutive_hits:
                logger.debug("Gate streak broken at %d", self._consecutive_hits)
            self._consecutive_hits = 0
            return GateDecision.CONTINUE

        self._consecutive_hits += 1
        if self._consecutive_hits >= self.settings.required_hits:
            self._triggered = True
            logger.info("Gate satisfied after %d consecutive detections", self._consecutive_hits)
            return GateDecision.REQUEST_SESSION_START
        return GateDecision.CONTINUE

    def reset(self) -> None:
        self._consecutive_hits = 0
        self._triggered = False


__all__ = ["GateEvaluator"]
