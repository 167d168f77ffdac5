"""Observable mutable cells.

A Store holds one value and notifies subscribers synchronously on every
write. Writes issued from inside a subscriber callback are queued and
delivered once the current write has reached every subscriber, so all
subscribers observe all writes in the order they were applied.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Generic, TypeVar

from repobridge.exceptions import record_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], None]
Unsubscribe = Callable[[], None]


class Store(Generic[T]):
    """A writable, observable value.

    Example:
        config = Store(InitialConfig())
        unsubscribe = config.subscribe(lambda value: print(value))
        config.write(WorkerErrorConfig(message="crashed"))
        unsubscribe()
    """

    def __init__(self, initial: T, *, name: str = "store") -> None:
        self.name = name
        self._value = initial
        # Incremented on every write
        self._version = 0
        # (token, callback, version subscribed at); a token keeps duplicate callbacks distinct
        self._subscribers: list[tuple[object, Subscriber[T], int]] = []
        self._pending: deque[tuple[int, T]] = deque()
        self._notifying = False

    def __repr__(self) -> str:
        return f"Store(name={self.name!r}, value={self._value!r})"

    @property
    def subscriber_count(self) -> int:
        """Number of currently attached subscribers."""
        return len(self._subscribers)

    def read(self) -> T:
        """Return the current value."""
        return self._value

    def write(self, value: T) -> None:
        """Replace the value and notify every subscriber.

        The new value is visible to ``read()`` as soon as this returns, even
        when the write was issued from inside another subscriber callback.
        """
        self._value = value
        self._version += 1
        self._pending.append((self._version, value))
        if self._notifying:
            return

        self._notifying = True
        try:
            while self._pending:
                self._deliver(*self._pending.popleft())
        finally:
            self._notifying = False
            self._pending.clear()

    def update(self, fn: Callable[[T], T]) -> None:
        """Write the result of applying ``fn`` to the current value."""
        self.write(fn(self._value))

    def subscribe(self, callback: Subscriber[T]) -> Unsubscribe:
        """Attach a subscriber and call it immediately with the current value.

        A subscriber added while writes are still queued receives the latest
        value once, now, and none of the queued writes.

        Args:
            callback: Called with each value written from now on.

        Returns:
            A function that detaches the subscriber. Calling it more than
            once is harmless.
        """
        token = object()
        self._subscribers.append((token, callback, self._version))

        def unsubscribe() -> None:
            self._subscribers[:] = [s for s in self._subscribers if s[0] is not token]

        self._invoke(callback, self._value)
        return unsubscribe

    def readonly(self) -> ReadableStore[T]:
        """Return a read-only view for consumers that must not write."""
        return ReadableStore(self)

    def _deliver(self, version: int, value: T) -> None:
        for _token, callback, since in list(self._subscribers):
            if version > since:
                self._invoke(callback, value)

    def _invoke(self, callback: Subscriber[T], value: T) -> None:
        try:
            callback(value)
        except Exception as e:
            # One failing subscriber must not starve the others
            record_error(e)
            logger.exception("Subscriber of %s raised", self.name)


class ReadableStore(Generic[T]):
    """Read-only view onto a Store."""

    def __init__(self, store: Store[T]) -> None:
        self._store = store

    @property
    def name(self) -> str:
        return self._store.name

    def read(self) -> T:
        return self._store.read()

    def subscribe(self, callback: Subscriber[T]) -> Unsubscribe:
        return self._store.subscribe(callback)
