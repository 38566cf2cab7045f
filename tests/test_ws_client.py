"""
Tests for the streaming connection manager.
"""

import asyncio

from liveness_client.backend.ws_client import (
    CompletionReceived,
    ConnectionClosed,
    ConnectionErrored,
    ConnectionOpened,
    ConnectionState,
    FrameResultReceived,
    StreamConnectionManager,
)


async def _drain(queue):
    for _ in range(5):
        await asyncio.sleep(0)
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestConnectionLifecycle:

    def test_connect_opens_and_emits_event(self, settings, connector):
        async def scenario():
            events = asyncio.Queue()
            manager = StreamConnectionManager(settings, events, connect=connector)
            assert manager.state is ConnectionState.CLOSED
            ok = await manager.connect("abc")
            drained = await _drain(events)
            state = manager.state
            await manager.close()
            return ok, drained, state

        ok, drained, state = asyncio.run(scenario())
        assert ok is True
        assert state is ConnectionState.OPEN
        assert connector.uris == ["ws://liveness.test/ws/process/abc"]
        assert isinstance(drained[0], ConnectionOpened)
        assert drained[0].session_id == "abc"

    def test_connect_failure_reports_error_without_retry(self, settings, connector):
        connector.fail_with = OSError("refused")

        async def scenario():
            events = asyncio.Queue()
            manager = StreamConnectionManager(settings, events, connect=connector)
            ok = await manager.connect("abc")
            return ok, manager.state, await _drain(events)

        ok, state, drained = asyncio.run(scenario())
        assert ok is False
        assert state is ConnectionState.CLOSED
        assert len(connector.uris) == 1
        assert len(drained) == 1 and isinstance(drained[0], ConnectionErrored)
        assert "refused" in drained[0].message

    def test_reconnect_closes_previous_connection_first(self, settings, connector):
        async def scenario():
            events = asyncio.Queue()
            manager = StreamConnectionManager(settings, events, connect=connector)
            await manager.connect("abc")
            first = connector.last
            first_generation = manager.generation
            await manager.connect("abc")
            second = connector.last
            drained = await _drain(events)
            await manager.close()
            return first, second, first_generation, manager, drained

        first, second, first_generation, manager, drained = asyncio.run(scenario())
        assert first is not second
        assert first.closed is True
        closed = [e for e in drained if isinstance(e, ConnectionClosed)]
        assert closed and closed[0].generation == first_generation
        opened = [e for e in drained if isinstance(e, ConnectionOpened)]
        assert opened[-1].generation > first_generation

    def test_send_while_closed_returns_false(self, settings, connector):
        async def scenario():
            manager = StreamConnectionManager(settings, asyncio.Queue(), connect=connector)
            return await manager.send("frame")

        assert asyncio.run(scenario()) is False

    def test_send_rejected_by_transport_returns_false(self, settings, connector):
        async def scenario():
            manager = StreamConnectionManager(settings, asyncio.Queue(), connect=connector)
            await manager.connect("abc")
            connector.last.accept = False
            result = await manager.send("frame")
            await manager.close()
            return result

        assert asyncio.run(scenario()) is False

    def test_send_delivers_text(self, settings, connector):
        async def scenario():
            manager = StreamConnectionManager(settings, asyncio.Queue(), connect=connector)
            await manager.connect("abc")
            result = await manager.send("stop")
            await manager.close()
            return result

        assert asyncio.run(scenario()) is True
        assert connector.last.sent == ["stop"]


class TestInboundMessages:

    def test_results_completion_and_bad_messages(self, settings, connector):
        async def scenario():
            events = asyncio.Queue()
            manager = StreamConnectionManager(settings, events, connect=connector)
            await manager.connect("abc")
            conn = connector.last
            conn.push({"frame_number": 1, "liveness_score": 80.0, "decision": "LIVE",
                       "blink_detected": False, "blink_count": 0, "current_fps": 25.0})
            conn.push("garbage")
            conn.push({"status": "completed"})
            drained = await _drain(events)
            await manager.close()
            return drained

        drained = asyncio.run(scenario())
        kinds = [type(e) for e in drained]
        assert kinds == [ConnectionOpened, FrameResultReceived, CompletionReceived]
        assert drained[1].result.frame_number == 1

    def test_peer_close_marks_closed(self, settings, connector):
        async def scenario():
            events = asyncio.Queue()
            manager = StreamConnectionManager(settings, events, connect=connector)
            await manager.connect("abc")
            connector.last.finish()
            drained = await _drain(events)
            return manager.state, drained

        state, drained = asyncio.run(scenario())
        assert state is ConnectionState.CLOSED
        assert isinstance(drained[-1], ConnectionClosed)

    def test_transport_error_reports_error(self, settings, connector):
        async def scenario():
            events = asyncio.Queue()
            manager = StreamConnectionManager(settings, events, connect=connector)
            await manager.connect("abc")
            connector.last.push(ConnectionResetError("reset by peer"))
            drained = await _drain(events)
            return manager.state, drained

        state, drained = asyncio.run(scenario())
        assert state is ConnectionState.CLOSED
        assert isinstance(drained[-1], ConnectionErrored)
        assert "reset by peer" in drained[-1].message
