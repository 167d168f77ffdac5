"""Typed notification channels.

A Channel wraps one named, backend-pushed event stream and decodes every
payload into its declared type before handing it to callbacks. Malformed
payloads are protocol errors and are never dropped silently.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, TypeVar

from repobridge.exceptions import PayloadDecodeError, record_error
from repobridge.messages import PayloadType, decode_payload, encode_payload, payload_type_name
from repobridge.store import Store
from repobridge.transport import Transport, Unlisten

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChannelCallback = Callable[[T], None]
DecodeErrorHandler = Callable[[PayloadDecodeError], None]


class Channel(Generic[T]):
    """A strongly-typed view of one backend notification stream.

    The channel holds at most one transport listener no matter how many
    callbacks are attached: the first ``listen()`` registers it and removing
    the last callback releases it.

    Example:
        config = Channel(transport, "gg://repo/config", REPO_CONFIG)
        unlisten = config.listen(lambda value: print(value))
        ...
        unlisten()

    Attributes:
        name: The channel name used on the wire.
        payload_type: Dataclass or TaggedUnion every payload decodes to.
        on_error: Called with decode errors. When unset the error is raised
            to whoever delivered the payload.
    """

    def __init__(
        self,
        transport: Transport,
        name: str,
        payload_type: PayloadType,
        *,
        on_error: DecodeErrorHandler | None = None,
    ) -> None:
        self.transport = transport
        self.name = name
        self.payload_type = payload_type
        self.on_error = on_error
        self._callbacks: list[tuple[object, ChannelCallback[T]]] = []
        self._unlisten_transport: Unlisten | None = None
        self.received = 0

    def __repr__(self) -> str:
        return f"Channel({self.name!r}, {payload_type_name(self.payload_type)})"

    @property
    def is_listening(self) -> bool:
        """Whether a transport listener is currently registered."""
        return self._unlisten_transport is not None

    def listen(self, callback: ChannelCallback[T]) -> Unlisten:
        """Attach a callback for decoded payloads.

        Returns:
            A function that detaches the callback. Calling it twice is a no-op.
        """
        token = object()
        self._callbacks.append((token, callback))
        if self._unlisten_transport is None:
            self._unlisten_transport = self.transport.listen(self.name, self._on_payload)
            logger.debug("Listening on channel '%s'", self.name)

        def unlisten() -> None:
            before = len(self._callbacks)
            self._callbacks[:] = [c for c in self._callbacks if c[0] is not token]
            if before != len(self._callbacks) and not self._callbacks:
                self._release()

        return unlisten

    def bind(self, store: Store[T]) -> Unlisten:
        """Write every decoded payload into ``store``."""
        return self.listen(store.write)

    def publish(self, value: T) -> None:
        """Send a value to the backend on this channel."""
        self.transport.emit(self.name, encode_payload(value))

    def decode(self, payload: Any) -> T:
        """Decode a raw payload, tagging any error with this channel's name."""
        try:
            return decode_payload(self.payload_type, payload)
        except PayloadDecodeError as e:
            e.context.setdefault("channel", self.name)
            raise

    def close(self) -> None:
        """Drop every callback and release the transport listener."""
        self._callbacks.clear()
        self._release()

    def _release(self) -> None:
        if self._unlisten_transport is not None:
            self._unlisten_transport()
            self._unlisten_transport = None
            logger.debug("Released channel '%s'", self.name)

    def _on_payload(self, payload: Any) -> None:
        try:
            value = self.decode(payload)
        except PayloadDecodeError as e:
            record_error(e)
            logger.error("Protocol mismatch on channel '%s': %s", self.name, e)
            if self.on_error is None:
                raise
            self.on_error(e)
            return

        self.received += 1
        for _token, callback in list(self._callbacks):
            callback(value)
