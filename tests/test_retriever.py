"""
Tests for result artifact retrieval.
"""

import asyncio
from datetime import datetime

import pytest

from liveness_client.config import RetrieverSettings
from liveness_client.errors import FetchError
from liveness_client.retriever import ResultRetriever, filename_from_headers


class _RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await asyncio.sleep(0)


def _fetch(make_http, settings=None, **kwargs):
    sleep = _RecordingSleep()

    async def scenario():
        http = make_http()
        try:
            retriever = ResultRetriever(settings or RetrieverSettings(), http, sleep=sleep)
            return await retriever.fetch("abc", **kwargs)
        finally:
            await http.aclose()

    return sleep, scenario


class TestResultRetriever:

    def test_not_ready_twice_then_success(self, make_http, service):
        service.result_statuses = [400, 400, 200]
        sleep, scenario = _fetch(make_http)

        artifact = asyncio.run(scenario())

        assert artifact.filename == "LivenessResults_abc.xlsx"
        assert artifact.content == service.result_content
        # grace period, then one backoff per "not ready"
        assert sleep.delays == [2.0, 2.0, 2.0]
        assert service.count("GET", "/session/abc/results") == 3

    def test_hard_failure_is_not_retried(self, make_http, service):
        service.result_statuses = [500]
        sleep, scenario = _fetch(make_http)

        with pytest.raises(FetchError) as excinfo:
            asyncio.run(scenario())

        assert excinfo.value.status_code == 500
        assert sleep.delays == [2.0]
        assert service.count("GET", "/session/abc/results") == 1

    def test_max_attempts_bounds_polling(self, make_http, service):
        service.result_statuses = [400] * 10
        sleep, scenario = _fetch(make_http, RetrieverSettings(max_attempts=3))

        with pytest.raises(FetchError):
            asyncio.run(scenario())

        assert service.count("GET", "/session/abc/results") == 3

    def test_cancellation_checked_between_attempts(self, make_http, service):
        service.result_statuses = [400] * 10
        calls = {"n": 0}

        def is_cancelled():
            calls["n"] += 1
            return service.count("GET", "/session/abc/results") >= 2

        sleep, scenario = _fetch(make_http, is_cancelled=is_cancelled)

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(scenario())

        assert service.count("GET", "/session/abc/results") == 2


class TestFilename:

    def test_quoted_filename(self):
        headers = {"Content-Disposition": 'attachment; filename="report.xlsx"'}
        assert filename_from_headers(headers) == "report.xlsx"

    def test_bare_filename(self):
        assert filename_from_headers({"content-disposition": "attachment; filename=r.xlsx"}) == "r.xlsx"

    def test_default_is_timestamped(self):
        name = filename_from_headers({}, now=datetime(2024, 5, 6, 7, 8, 9))
        assert name == "LivenessResults_20240506_070809.xlsx"
