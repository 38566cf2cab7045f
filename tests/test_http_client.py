"""
Tests for the liveness REST client.
"""

import asyncio

import httpx
import pytest

from liveness_client.backend.http_client import LivenessHttpClient, ResultsOutcome
from liveness_client.errors import HandshakeError


def _run(coro):
    return asyncio.run(coro)


class TestHandshake:

    def test_open_returns_session_id(self, make_http, service):
        async def scenario():
            client = make_http()
            try:
                return await client.open()
            finally:
                await client.aclose()

        assert _run(scenario()) == "abc"
        request = service.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/start-session"
        assert request.content == b""

    def test_open_non_success_raises_start_failed(self, make_http, service):
        service.start_status = 503

        async def scenario():
            client = make_http()
            try:
                await client.open()
            finally:
                await client.aclose()

        with pytest.raises(HandshakeError) as excinfo:
            _run(scenario())
        assert excinfo.value.user_message == "Failed to start session"

    def test_open_transport_error_raises_start_failed(self, settings):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            client = LivenessHttpClient(settings, transport=httpx.MockTransport(boom))
            try:
                await client.open()
            finally:
                await client.aclose()

        with pytest.raises(HandshakeError):
            _run(scenario())

    def test_open_missing_session_id_raises(self, settings):
        def handler(request):
            return httpx.Response(200, json={"status": "created"})

        async def scenario():
            client = LivenessHttpClient(settings, transport=httpx.MockTransport(handler))
            try:
                await client.open()
            finally:
                await client.aclose()

        with pytest.raises(HandshakeError):
            _run(scenario())

    def test_close_sends_keep_flag(self, make_http, service):
        async def scenario():
            client = make_http()
            try:
                return await client.close("abc", keep=True)
            finally:
                await client.aclose()

        assert _run(scenario()) is True
        assert service.stop_calls == [("abc", "true")]

    def test_close_failure_is_not_raised(self, settings):
        def handler(request):
            return httpx.Response(500, text="boom")

        async def scenario():
            client = LivenessHttpClient(settings, transport=httpx.MockTransport(handler))
            try:
                return await client.close("abc")
            finally:
                await client.aclose()

        assert _run(scenario()) is False


class TestStatusAndResults:

    def test_get_status(self, make_http):
        async def scenario():
            client = make_http()
            try:
                return await client.get_status("abc")
            finally:
                await client.aclose()

        status = _run(scenario())
        assert status.frame_count == 42
        assert status.is_active is True

    @pytest.mark.parametrize(
        "code,outcome",
        [(200, ResultsOutcome.READY), (400, ResultsOutcome.NOT_READY), (500, ResultsOutcome.FAILED), (404, ResultsOutcome.FAILED)],
    )
    def test_results_classification(self, make_http, service, code, outcome):
        service.result_statuses = [code]

        async def scenario():
            client = make_http()
            try:
                return await client.fetch_results_once("abc")
            finally:
                await client.aclose()

        response = _run(scenario())
        assert response.outcome is outcome
        assert response.status_code == code
        if outcome is ResultsOutcome.READY:
            assert response.content == service.result_content
