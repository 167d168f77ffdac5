"""Transport abstraction between the bridge and the backend worker.

The bridge never talks to a process directly. Channels and queries depend
only on the ``Transport`` protocol defined here, which lets the same session
run against a real worker (``JsonLinesTransport`` over a subprocess) or an
in-memory loopback (``repobridge.testing.LoopbackTransport``).

Wire framing for ``JsonLinesTransport`` is one JSON object per line:

    backend -> frontend   {"event": <channel>, "payload": <any>}
                          {"id": <int>, "result": <any>}
                          {"id": <int>, "error": <str>}
    frontend -> backend   {"id": <int>, "command": <str>, "request": <any>}
                          {"event": <channel>, "payload": <any>}
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

from repobridge.exceptions import (
    PayloadDecodeError,
    ProtocolError,
    TransportClosedError,
    WorkerSpawnError,
    record_error,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]
ErrorHandler = Callable[[ProtocolError], None]
CloseHandler = Callable[[str], None]
Unlisten = Callable[[], None]

# Largest single line accepted from a worker
STREAM_LIMIT = 16 * 1024 * 1024


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class Response:
    """A backend reply to one request."""

    request_id: int
    """Id of the request this answers."""

    result: Any = None
    """Decoded JSON result when the request succeeded."""

    error: str | None = None
    """Backend error description when the request failed."""

    @property
    def ok(self) -> bool:
        return self.error is None


ResponseHandler = Callable[[Response], None]


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class Transport(Protocol):
    """Moves JSON-like messages across the process boundary.

    Implementations must deliver events for one channel in the order the
    backend sent them, and must invoke handlers on the event loop thread.
    """

    @property
    def is_closed(self) -> bool:
        """Whether the transport can still carry messages."""
        ...

    def listen(self, channel: str, handler: EventHandler) -> Unlisten:
        """Register a handler for raw payloads on a channel."""
        ...

    def emit(self, channel: str, payload: Any) -> None:
        """Send an event to the backend."""
        ...

    def send_request(self, request_id: int, command: str, request: Any) -> None:
        """Send a request; the answer arrives through the response handler."""
        ...

    def set_response_handler(self, handler: ResponseHandler | None) -> None:
        """Install the single handler that receives every response."""
        ...

    def set_close_handler(self, handler: CloseHandler | None) -> None:
        """Install a handler called once with a reason when the transport closes."""
        ...


class ListenerRegistry:
    """Per-channel handler lists shared by transport implementations."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[tuple[object, EventHandler]]] = defaultdict(list)

    def add(self, channel: str, handler: EventHandler) -> Unlisten:
        token = object()
        self._handlers[channel].append((token, handler))

        def unlisten() -> None:
            handlers = self._handlers.get(channel)
            if handlers is None:
                return
            handlers[:] = [h for h in handlers if h[0] is not token]
            if not handlers:
                del self._handlers[channel]

        return unlisten

    def count(self, channel: str | None = None) -> int:
        if channel is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(channel, []))

    def dispatch(self, channel: str, payload: Any) -> bool:
        """Call every handler for ``channel``; return False if there were none."""
        handlers = list(self._handlers.get(channel, []))
        for _token, handler in handlers:
            handler(payload)
        return bool(handlers)

    def clear(self) -> None:
        self._handlers.clear()


# =============================================================================
# JSON lines over streams
# =============================================================================


class JsonLinesTransport:
    """Transport speaking newline-delimited JSON over asyncio streams.

    Call ``run()`` as a task; it reads until EOF and then closes the
    transport. Malformed lines are protocol errors: they are logged,
    recorded and handed to ``on_protocol_error`` but do not stop reading.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        *,
        on_protocol_error: ErrorHandler | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._listeners = ListenerRegistry()
        self._response_handler: ResponseHandler | None = None
        self._close_handler: CloseHandler | None = None
        self._closed = False
        self.on_protocol_error = on_protocol_error

    @property
    def is_closed(self) -> bool:
        return self._closed

    def listener_count(self, channel: str | None = None) -> int:
        return self._listeners.count(channel)

    def listen(self, channel: str, handler: EventHandler) -> Unlisten:
        return self._listeners.add(channel, handler)

    def set_response_handler(self, handler: ResponseHandler | None) -> None:
        self._response_handler = handler

    def set_close_handler(self, handler: CloseHandler | None) -> None:
        self._close_handler = handler

    def emit(self, channel: str, payload: Any) -> None:
        self._write({"event": channel, "payload": payload}, operation="emit")

    def send_request(self, request_id: int, command: str, request: Any) -> None:
        self._write(
            {"id": request_id, "command": command, "request": request},
            operation=command,
        )

    def _write(self, message: dict[str, Any], *, operation: str) -> None:
        if self._closed:
            raise TransportClosedError(operation)
        line = json.dumps(message, separators=(",", ":")) + "\n"
        self._writer.write(line.encode("utf-8"))

    async def run(self) -> None:
        """Read and dispatch lines until the stream ends."""
        reason = "worker closed its output"
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError as e:
                    # readline() has already discarded the oversized data
                    self._protocol_error(
                        PayloadDecodeError(f"Line exceeds the read limit: {e}", cause=e)
                    )
                    continue
                if not line:
                    break
                self.feed_line(line)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            reason = f"transport read failed: {e}"
            logger.warning("Transport read failed: %s", e)
        finally:
            self.close(reason)

    def feed_line(self, line: bytes | str) -> None:
        """Decode one line and dispatch it."""
        if isinstance(line, bytes):
            try:
                text = line.decode("utf-8")
            except UnicodeDecodeError as e:
                self._protocol_error(
                    PayloadDecodeError("Line is not valid UTF-8", payload=line, cause=e)
                )
                return
        else:
            text = line
        text = text.strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            self._protocol_error(
                PayloadDecodeError("Line is not valid JSON", payload=text, cause=e)
            )
            return
        if not isinstance(message, dict):
            self._protocol_error(PayloadDecodeError("Line is not a JSON object", payload=message))
            return

        if "event" in message:
            self._dispatch_event(message)
        elif "id" in message:
            self._dispatch_response(message)
        else:
            self._protocol_error(
                PayloadDecodeError("Line is neither an event nor a response", payload=message)
            )

    def _dispatch_event(self, message: dict[str, Any]) -> None:
        channel = message["event"]
        if not isinstance(channel, str):
            self._protocol_error(PayloadDecodeError("Event channel is not a string", payload=message))
            return
        try:
            delivered = self._listeners.dispatch(channel, message.get("payload"))
        except ProtocolError as e:
            # Already logged and recorded by the channel that raised it
            if self.on_protocol_error is not None:
                self.on_protocol_error(e)
            return
        except Exception as e:
            # One failing listener must not end the read loop
            record_error(e)
            logger.exception("Listener on channel '%s' raised", channel)
            return
        if not delivered:
            logger.debug("No listeners for channel '%s'", channel)

    def _dispatch_response(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            self._protocol_error(PayloadDecodeError("Response id is not an integer", payload=message))
            return
        error = message.get("error")
        response = Response(
            request_id=request_id,
            result=message.get("result"),
            error=None if error is None else str(error),
        )
        if self._response_handler is None:
            logger.warning("Dropping response %d: no response handler installed", request_id)
            return
        try:
            self._response_handler(response)
        except Exception as e:
            record_error(e)
            logger.exception("Response handler raised for request %d", request_id)

    def _protocol_error(self, error: ProtocolError) -> None:
        record_error(error)
        logger.error("Protocol error on transport: %s", error)
        if self.on_protocol_error is not None:
            self.on_protocol_error(error)

    def close(self, reason: str = "closed") -> None:
        """Close the transport; the close handler runs once."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        close = getattr(self._writer, "close", None)
        if close is not None:
            close()
        logger.info("Transport closed: %s", reason)
        if self._close_handler is not None:
            self._close_handler(reason)


# =============================================================================
# Worker process
# =============================================================================


class WorkerProcess:
    """Spawns the backend worker and exposes a JsonLinesTransport over its pipes.

    Example:
        worker = WorkerProcess(["gg-worker", "--stdio"])
        transport = await worker.start()
        session = RepoSession(transport)
        session.start()
        code = await worker.wait()
    """

    def __init__(self, command: list[str], *, cwd: str | None = None) -> None:
        if not command:
            raise ValueError("Worker command must not be empty")
        self.command = command
        self.cwd = cwd
        self.process: asyncio.subprocess.Process | None = None
        self.transport: JsonLinesTransport | None = None
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def returncode(self) -> int | None:
        return None if self.process is None else self.process.returncode

    async def start(self) -> JsonLinesTransport:
        """Spawn the process and start reading its stdout.

        Raises:
            WorkerSpawnError: If the executable cannot be started.
        """
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            record_error(e)
            raise WorkerSpawnError(
                f"Failed to start worker: {e}", command=self.command, cause=e
            ) from e

        assert self.process.stdout is not None and self.process.stdin is not None
        self.transport = JsonLinesTransport(self.process.stdout, self.process.stdin)
        self._reader_task = asyncio.create_task(self.transport.run())
        logger.info("Started worker pid=%s: %s", self.process.pid, " ".join(self.command))
        return self.transport

    async def wait(self) -> int:
        """Wait for the worker to exit and the transport to drain."""
        if self.process is None:
            raise WorkerSpawnError("Worker was never started", command=self.command)
        code = await self.process.wait()
        if self._reader_task is not None:
            await self._reader_task
        logger.info("Worker exited with code %d", code)
        return code

    async def stop(self, timeout: float = 5.0) -> None:
        """Terminate the worker, killing it if it does not exit in time."""
        if self.process is None or self.process.returncode is not None:
            return
        self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Worker did not exit after %.1fs, killing", timeout)
            self.process.kill()
            await self.process.wait()
