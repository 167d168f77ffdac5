"""Tests for the JSON-lines transport and worker process."""

import asyncio
import json
import sys
from unittest.mock import MagicMock

import pytest

from conftest import CONFIG_CHANNEL, STATUS_CHANNEL
from repobridge.channel import Channel
from repobridge.exceptions import (
    PayloadDecodeError,
    TransportClosedError,
    WorkerSpawnError,
    error_stats,
)
from repobridge.messages import REPO_CONFIG, TimeoutErrorConfig
from repobridge.transport import (
    JsonLinesTransport,
    ListenerRegistry,
    Response,
    Transport,
    WorkerProcess,
)
from repobridge.testing import LoopbackTransport


class FakeWriter:
    """Collects written lines like a StreamWriter."""

    def __init__(self):
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    def close(self) -> None:
        self.closed = True

    def messages(self) -> list[dict]:
        return [json.loads(line) for line in self.data.decode().splitlines()]


def make_transport(**kwargs) -> tuple[JsonLinesTransport, FakeWriter]:
    writer = FakeWriter()
    return JsonLinesTransport(MagicMock(), writer, **kwargs), writer


class TestProtocolConformance:
    """Test that both transports satisfy the Transport protocol."""

    def test_json_lines_is_transport(self):
        """JsonLinesTransport implements Transport."""
        transport, _ = make_transport()
        assert isinstance(transport, Transport)

    def test_loopback_is_transport(self):
        """LoopbackTransport implements Transport."""
        assert isinstance(LoopbackTransport(), Transport)


class TestListenerRegistry:
    """Test per-channel handler bookkeeping."""

    def test_dispatch_and_count(self):
        """Handlers are called per channel and counted."""
        registry = ListenerRegistry()
        handler = MagicMock()
        registry.add("a", handler)
        registry.add("b", MagicMock())

        assert registry.dispatch("a", 1) is True
        assert registry.dispatch("c", 1) is False
        handler.assert_called_once_with(1)
        assert registry.count() == 2
        assert registry.count("a") == 1

    def test_unlisten_after_clear(self):
        """Unlistening after clear() is harmless."""
        registry = ListenerRegistry()
        unlisten = registry.add("a", MagicMock())
        registry.clear()
        unlisten()
        assert registry.count() == 0


class TestJsonLinesOutgoing:
    """Test frontend-to-backend framing."""

    def test_send_request(self):
        """Requests carry id, command and body."""
        transport, writer = make_transport()

        transport.send_request(3, "load_repository", {"path": "/r"})

        assert writer.messages() == [{"id": 3, "command": "load_repository", "request": {"path": "/r"}}]
        assert writer.data.endswith(b"\n")

    def test_emit(self):
        """Events carry the channel and payload."""
        transport, writer = make_transport()

        transport.emit("gg://revision/select", {"x": 1})

        assert writer.messages() == [{"event": "gg://revision/select", "payload": {"x": 1}}]

    def test_send_after_close_raises(self):
        """A closed transport refuses to write."""
        transport, _ = make_transport()
        transport.close()

        with pytest.raises(TransportClosedError):
            transport.send_request(1, "cmd", None)


class TestJsonLinesIncoming:
    """Test backend-to-frontend dispatch."""

    def test_event_dispatched(self):
        """Event lines reach channel listeners."""
        transport, _ = make_transport()
        handler = MagicMock()
        transport.listen(CONFIG_CHANNEL, handler)

        transport.feed_line(b'{"event": "gg://repo/config", "payload": {"type": "Initial"}}\n')

        handler.assert_called_once_with({"type": "Initial"})

    def test_response_dispatched(self):
        """Response lines reach the response handler."""
        transport, _ = make_transport()
        handler = MagicMock()
        transport.set_response_handler(handler)

        transport.feed_line('{"id": 4, "result": {"type": "Unchanged"}}')
        transport.feed_line('{"id": 5, "error": "locked"}')

        assert handler.call_args_list[0][0][0] == Response(4, result={"type": "Unchanged"})
        assert handler.call_args_list[1][0][0] == Response(5, error="locked")

    def test_blank_lines_ignored(self):
        """Empty lines are skipped silently."""
        on_error = MagicMock()
        transport, _ = make_transport(on_protocol_error=on_error)

        transport.feed_line(b"   \n")

        on_error.assert_not_called()

    @pytest.mark.parametrize(
        "line",
        [
            b"{not json",
            b"[1, 2, 3]",
            b'{"neither": true}',
            b'{"id": "seven", "result": null}',
        ],
    )
    def test_malformed_lines_are_protocol_errors(self, line):
        """Malformed lines are reported, not dropped."""
        on_error = MagicMock()
        transport, _ = make_transport(on_protocol_error=on_error)

        transport.feed_line(line)

        on_error.assert_called_once()
        assert isinstance(on_error.call_args[0][0], PayloadDecodeError)

    def test_channel_decode_error_forwarded(self):
        """A channel raising on a bad payload is reported through the transport."""
        on_error = MagicMock()
        transport, _ = make_transport(on_protocol_error=on_error)
        Channel(transport, CONFIG_CHANNEL, REPO_CONFIG).listen(MagicMock())

        transport.feed_line('{"event": "gg://repo/config", "payload": {"type": "Nope"}}')

        assert on_error.call_args[0][0].context["channel"] == CONFIG_CHANNEL

    def test_channel_decodes_through_transport(self):
        """Channels on the transport receive typed values."""
        transport, _ = make_transport()
        received = []
        Channel(transport, CONFIG_CHANNEL, REPO_CONFIG).listen(received.append)

        transport.feed_line('{"event": "gg://repo/config", "payload": {"type": "TimeoutError"}}')

        assert received == [TimeoutErrorConfig()]

    def test_non_string_event_is_protocol_error(self):
        """An event whose channel is not a string is reported."""
        on_error = MagicMock()
        transport, _ = make_transport(on_protocol_error=on_error)

        transport.feed_line('{"event": ["gg://repo/config"], "payload": {"type": "Initial"}}')

        assert "not a string" in on_error.call_args[0][0].message

    def test_invalid_utf8_is_protocol_error(self):
        """Bytes that are not UTF-8 are reported instead of being replaced."""
        on_error = MagicMock()
        transport, _ = make_transport(on_protocol_error=on_error)
        received = []
        Channel(transport, CONFIG_CHANNEL, REPO_CONFIG).listen(received.append)

        transport.feed_line(
            b'{"event": "gg://repo/config", "payload": '
            b'{"type": "LoadError", "absolute_path": "/r\xff", "message": "m"}}\n'
        )

        assert received == []
        assert "UTF-8" in on_error.call_args[0][0].message

    def test_failing_listener_is_contained(self):
        """A listener raising a non-protocol error is logged and recorded."""
        transport, _ = make_transport()
        transport.listen(CONFIG_CHANNEL, MagicMock(side_effect=RuntimeError("boom")))

        transport.feed_line('{"event": "gg://repo/config", "payload": {"type": "Initial"}}')

        assert error_stats.by_type.get("RuntimeError") == 1

    def test_failing_response_handler_is_contained(self):
        """A response handler raising is logged and recorded."""
        transport, _ = make_transport()
        transport.set_response_handler(MagicMock(side_effect=KeyError("id")))

        transport.feed_line('{"id": 1, "result": null}')

        assert error_stats.by_type.get("KeyError") == 1


class TestJsonLinesClose:
    """Test closing."""

    def test_close_runs_handler_once(self):
        """The close handler is called exactly once."""
        transport, writer = make_transport()
        on_close = MagicMock()
        transport.set_close_handler(on_close)

        transport.close("bye")
        transport.close("again")

        on_close.assert_called_once_with("bye")
        assert writer.closed
        assert transport.is_closed

    @pytest.mark.asyncio
    async def test_run_reads_until_eof(self):
        """run() dispatches every line then closes."""
        reader = asyncio.StreamReader()
        transport = JsonLinesTransport(reader, FakeWriter())
        handler = MagicMock()
        on_close = MagicMock()
        transport.listen("ch", handler)
        transport.set_close_handler(on_close)

        reader.feed_data(b'{"event": "ch", "payload": 1}\n{"event": "ch", "payload": 2}\n')
        reader.feed_eof()
        await transport.run()

        assert [c[0][0] for c in handler.call_args_list] == [1, 2]
        on_close.assert_called_once_with("worker closed its output")

    @pytest.mark.asyncio
    async def test_run_survives_oversized_line(self):
        """A line over the read limit is reported and later lines still arrive."""
        reader = asyncio.StreamReader(limit=1024)
        on_error = MagicMock()
        transport = JsonLinesTransport(reader, FakeWriter(), on_protocol_error=on_error)
        received = []
        Channel(transport, CONFIG_CHANNEL, REPO_CONFIG).listen(received.append)
        on_close = MagicMock()
        transport.set_close_handler(on_close)

        big = json.dumps({"event": STATUS_CHANNEL, "payload": {"operation_description": "x" * 4000}})
        reader.feed_data(big.encode() + b"\n")
        reader.feed_data(b'{"event": "gg://repo/config", "payload": {"type": "TimeoutError"}}\n')
        reader.feed_eof()
        await transport.run()

        assert "read limit" in on_error.call_args_list[0][0][0].message
        assert received == [TimeoutErrorConfig()]
        on_close.assert_called_once_with("worker closed its output")

    @pytest.mark.asyncio
    async def test_run_survives_bad_event_and_failing_listener(self):
        """Neither a malformed event nor a raising listener ends the loop."""
        reader = asyncio.StreamReader()
        on_error = MagicMock()
        transport = JsonLinesTransport(reader, FakeWriter(), on_protocol_error=on_error)
        transport.listen(STATUS_CHANNEL, MagicMock(side_effect=RuntimeError("boom")))
        received = []
        Channel(transport, CONFIG_CHANNEL, REPO_CONFIG).listen(received.append)

        reader.feed_data(b'{"event": ["x"], "payload": null}\n')
        reader.feed_data(b'{"event": "gg://repo/status", "payload": null}\n')
        reader.feed_data(b'{"event": "gg://repo/config", "payload": {"type": "TimeoutError"}}\n')
        reader.feed_eof()
        await transport.run()

        on_error.assert_called_once()
        assert received == [TimeoutErrorConfig()]


class TestWorkerProcess:
    """Test spawning the worker."""

    def test_empty_command_rejected(self):
        """A worker needs a command."""
        with pytest.raises(ValueError):
            WorkerProcess([])

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        """An unknown executable raises WorkerSpawnError."""
        worker = WorkerProcess(["/nonexistent/repobridge-worker"])
        with pytest.raises(WorkerSpawnError):
            await worker.start()

    @pytest.mark.asyncio
    async def test_wait_before_start(self):
        """Waiting on an unstarted worker is an error."""
        with pytest.raises(WorkerSpawnError):
            await WorkerProcess(["true"]).wait()

    @pytest.mark.asyncio
    async def test_worker_events_reach_listeners(self):
        """Lines printed by the worker are dispatched, then the transport closes."""
        script = 'print(\'{"event": "gg://repo/config", "payload": {"type": "TimeoutError"}}\', flush=True)'
        worker = WorkerProcess([sys.executable, "-c", script])
        transport = await worker.start()
        received = []
        Channel(transport, CONFIG_CHANNEL, REPO_CONFIG).listen(received.append)
        closed = MagicMock()
        transport.set_close_handler(closed)

        code = await worker.wait()

        assert code == 0
        assert received == [TimeoutErrorConfig()]
        closed.assert_called_once()
