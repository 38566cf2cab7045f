"""Polling download of the final results artifact."""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Mapping, Optional

from .backend.http_client import LivenessHttpClient, ResultsOutcome
from .config import RetrieverSettings
from .errors import FetchError
from .models import ResultArtifact

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_FILENAME_RE = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def filename_from_headers(headers: Mapping[str, str], now: Optional[datetime] = None) -> str:
    """Filename from Content-Disposition, or a timestamped default."""
    disposition = None
    for key, value in headers.items():
        if key.lower() == "content-disposition":
            disposition = value
            break
    if disposition:
        match = _FILENAME_RE.search(disposition)
        if match and match.group(1).strip():
            return match.group(1).strip()
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"LivenessResults_{stamp}.xlsx"


class ResultRetriever:
    """Waits out the grace period, then polls until the artifact is ready.

    A 400 means the server is still processing and is retried after a fixed
    backoff; with ``max_attempts`` unset this continues until the caller
    cancels. Any other failure is final.
    """

    def __init__(
        self,
        settings: RetrieverSettings,
        http: LivenessHttpClient,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._http = http
        self._sleep = sleep

    async def fetch(
        self,
        session_id: str,
        *,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> ResultArtifact:
        def check_cancelled() -> None:
            if is_cancelled and is_cancelled():
                raise asyncio.CancelledError()

        logger.info("Getting session results for %s", session_id)
        await self._sleep(self.settings.grace_period_s)

        attempt = 0
        while True:
            check_cancelled()
            attempt += 1
            response = await self._http.fetch_results_once(session_id)
            check_cancelled()

            if response.outcome is ResultsOutcome.READY:
                filename = filename_from_headers(response.headers)
                logger.info("Results retrieved (%d bytes) as %s after %d attempt(s)", len(response.content), filename, attempt)
                return ResultArtifact(filename=filename, content=response.content)

            if response.outcome is ResultsOutcome.FAILED:
                raise FetchError.failed(
                    f"results for {session_id} failed: {response.detail}", status_code=response.status_code
                )

            max_attempts = self.settings.max_attempts
            if max_attempts is not None and attempt >= max_attempts:
                raise FetchError(
                    "Session results not ready",
                    log_message=f"results for {session_id} still not ready after {attempt} attempts",
                    status_code=response.status_code,
                )
            logger.info("Processing not completed yet, will retry in %.1fs", self.settings.retry_backoff_s)
            await self._sleep(self.settings.retry_backoff_s)


__all__ = ["ResultRetriever", "filename_from_headers"]
