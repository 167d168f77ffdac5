"""Typed request/response exchanges with the backend.

A Query is a settle-once result handle. It starts PENDING and moves to
RESOLVED or REJECTED exactly once; any later settlement (a duplicate backend
response, a local timeout that lost the race) is ignored.

The QueryClient issues queries over a Transport, correlates responses by
request id, and optionally races a local timeout against the backend.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generator, Generic, TypeVar

from repobridge.config import BridgeConfig, RetryPolicy
from repobridge.exceptions import (
    PayloadDecodeError,
    QueryRejectedError,
    TransportError,
    record_error,
)
from repobridge.messages import PayloadType, decode_payload, payload_type_name
from repobridge.transport import Response, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueryStatus(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class QueryErrorKind(Enum):
    """Why a query was rejected."""

    BACKEND = "backend"  # The worker answered with an error
    TIMEOUT = "timeout"  # No answer within the local time budget
    TRANSPORT = "transport"  # The request could not be sent
    DECODE = "decode"  # The answer did not match the declared type
    WORKER_EXITED = "worker_exited"  # The worker went away before answering


RETRYABLE_KINDS = frozenset({QueryErrorKind.TIMEOUT, QueryErrorKind.TRANSPORT})


@dataclass(frozen=True)
class QueryError:
    """Structured description of a rejected query."""

    kind: QueryErrorKind
    message: str
    command: str = ""

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


DoneCallback = Callable[["Query[Any]"], None]


class Query(Generic[T]):
    """One in-flight request and its eventual result.

    Callers may poll ``status``, register ``add_done_callback``, or
    ``await`` the query, which returns the value or raises
    QueryRejectedError.
    """

    def __init__(self, query_id: int, command: str, request: Any = None) -> None:
        self.id = query_id
        self.command = command
        self.request = request
        self.status = QueryStatus.PENDING
        self.value: T | None = None
        self.error: QueryError | None = None
        self.sent_at = time.monotonic()
        self.settled_at: float | None = None
        self._callbacks: list[DoneCallback] = []
        self._future: asyncio.Future[None] | None = None

    def __repr__(self) -> str:
        return f"Query(id={self.id}, command={self.command!r}, status={self.status.value})"

    @property
    def is_pending(self) -> bool:
        return self.status is QueryStatus.PENDING

    @property
    def is_resolved(self) -> bool:
        return self.status is QueryStatus.RESOLVED

    @property
    def is_rejected(self) -> bool:
        return self.status is QueryStatus.REJECTED

    def age(self, now: float | None = None) -> float:
        """Seconds since the request was sent (or until it settled)."""
        end = self.settled_at if self.settled_at is not None else (now or time.monotonic())
        return end - self.sent_at

    def is_hung(self, threshold: float, now: float | None = None) -> bool:
        """Whether the query has been pending for at least ``threshold`` seconds."""
        return self.is_pending and self.age(now) >= threshold

    def resolve(self, value: T) -> bool:
        """Settle successfully. Returns False if the query was already settled."""
        if not self.is_pending:
            logger.debug("Ignoring duplicate resolution of %r", self)
            return False
        self.value = value
        self._settle(QueryStatus.RESOLVED)
        return True

    def reject(self, error: QueryError) -> bool:
        """Settle with an error. Returns False if the query was already settled."""
        if not self.is_pending:
            logger.debug("Ignoring late rejection of %r: %s", self, error.message)
            return False
        self.error = error
        self._settle(QueryStatus.REJECTED)
        return True

    def result(self) -> T:
        """Return the value of a resolved query.

        Raises:
            QueryRejectedError: If the query was rejected.
            asyncio.InvalidStateError: If the query is still pending.
        """
        if self.status is QueryStatus.RESOLVED:
            return self.value  # type: ignore[return-value]
        if self.status is QueryStatus.REJECTED:
            assert self.error is not None
            raise QueryRejectedError(self.error)
        raise asyncio.InvalidStateError(f"{self!r} has not settled")

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Call ``callback(query)`` on settlement, or now if already settled."""
        if self.is_pending:
            self._callbacks.append(callback)
        else:
            self._run_callback(callback)

    def __await__(self) -> Generator[Any, None, T]:
        if self.is_pending:
            if self._future is None:
                self._future = asyncio.get_running_loop().create_future()
            # Shielded so one cancelled awaiter does not cancel the others
            yield from asyncio.shield(self._future).__await__()
        return self.result()

    def _settle(self, status: QueryStatus) -> None:
        self.status = status
        self.settled_at = time.monotonic()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)
        if self._future is not None and not self._future.done():
            self._future.set_result(None)

    def _run_callback(self, callback: DoneCallback) -> None:
        try:
            callback(self)
        except Exception as e:
            record_error(e)
            logger.exception("Done callback of %r raised", self)


class _UseConfigTimeout:
    def __repr__(self) -> str:
        return "DEFAULT_TIMEOUT"


DEFAULT_TIMEOUT: Any = _UseConfigTimeout()


@dataclass
class _PendingEntry:
    query: Query[Any]
    result_type: PayloadType
    timer: asyncio.TimerHandle | None = None


class QueryClient:
    """Issues queries over a transport and settles them from responses.

    Example:
        client = QueryClient(transport, config)
        client.attach()
        query = client.send("load_repository", {"path": "/r"}, REPO_CONFIG)
        config = await query
    """

    def __init__(self, transport: Transport, config: BridgeConfig | None = None) -> None:
        self.transport = transport
        self.config = config or BridgeConfig()
        self._ids = itertools.count(1)
        self._pending: dict[int, _PendingEntry] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def attach(self) -> None:
        """Start receiving responses from the transport."""
        self.transport.set_response_handler(self.handle_response)

    def detach(self) -> None:
        """Stop receiving responses; pending queries stay pending."""
        self.transport.set_response_handler(None)

    def pending_queries(self) -> list[Query[Any]]:
        return [entry.query for entry in self._pending.values()]

    def hung_queries(self, threshold: float | None = None) -> list[Query[Any]]:
        """Pending queries older than ``threshold`` (default: config.hung_after)."""
        limit = self.config.hung_after if threshold is None else threshold
        now = time.monotonic()
        return [q for q in self.pending_queries() if q.is_hung(limit, now)]

    def send(
        self,
        command: str,
        request: Any,
        result_type: PayloadType,
        *,
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> Query[Any]:
        """Send a request and return its pending Query immediately.

        Args:
            command: Backend command name.
            request: JSON-compatible request body.
            result_type: Dataclass or TaggedUnion the answer decodes to.
            timeout: Local timeout in seconds; None disables it. Defaults to
                ``config.query_timeout``.

        Returns:
            The Query. A request that cannot be sent is returned already
            rejected with QueryErrorKind.TRANSPORT rather than raising.
        """
        query: Query[Any] = Query(next(self._ids), command, request)

        if self.transport.is_closed:
            query.reject(QueryError(QueryErrorKind.TRANSPORT, "Transport is closed", command))
            return query

        entry = _PendingEntry(query=query, result_type=result_type)
        self._pending[query.id] = entry
        try:
            self.transport.send_request(query.id, command, request)
        except (TransportError, OSError) as e:
            record_error(e)
            logger.warning("Failed to send %s: %s", command, e)
            del self._pending[query.id]
            query.reject(QueryError(QueryErrorKind.TRANSPORT, str(e), command))
            return query

        if timeout is DEFAULT_TIMEOUT:
            timeout = self.config.query_timeout
        if timeout is not None:
            entry.timer = self._arm_timer(query.id, timeout)
        logger.debug("Sent %r expecting %s", query, payload_type_name(result_type))
        return query

    async def send_with_retry(
        self,
        command: str,
        request: Any,
        result_type: PayloadType,
        *,
        policy: RetryPolicy | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
        on_attempt: Callable[[Query[Any]], None] | None = None,
        abandoned: Callable[[], bool] | None = None,
    ) -> Query[Any]:
        """Send a query, re-issuing it while it fails with a retryable error.

        ``abandoned`` is checked before every re-send; once it returns True the
        last attempt is returned as is and nothing more is sent.

        Returns:
            The last settled Query; inspect its status rather than catching.
        """
        policy = policy or self.config.retry
        attempt = 1
        while True:
            query = self.send(command, request, result_type, timeout=timeout)
            if on_attempt is not None:
                on_attempt(query)
            try:
                await query
                return query
            except QueryRejectedError as e:
                if not e.error.retryable or attempt >= policy.max_attempts:
                    return query
                if abandoned is not None and abandoned():
                    logger.debug("Not retrying %s: abandoned by caller", command)
                    return query
                delay = policy.delay_for(attempt)
                logger.info(
                    "Retrying %s after %s (attempt %d/%d, sleeping %.2fs)",
                    command,
                    e.error.kind.value,
                    attempt + 1,
                    policy.max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                if abandoned is not None and abandoned():
                    logger.debug("Not retrying %s: abandoned during backoff", command)
                    return query
                attempt += 1

    def discard(self, query: Query[Any]) -> None:
        """Stop tracking a query; its eventual response will be ignored."""
        entry = self._pending.pop(query.id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()

    def reject_all(self, kind: QueryErrorKind, message: str) -> int:
        """Reject every pending query. Returns how many were rejected."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            entry.query.reject(QueryError(kind, message, entry.query.command))
        return len(entries)

    def handle_response(self, response: Response) -> None:
        """Settle the query a response belongs to, if it is still tracked."""
        entry = self._pending.pop(response.request_id, None)
        if entry is None:
            logger.debug("Ignoring response for unknown or abandoned query %d", response.request_id)
            return
        if entry.timer is not None:
            entry.timer.cancel()

        query = entry.query
        if not response.ok:
            query.reject(QueryError(QueryErrorKind.BACKEND, response.error or "", query.command))
            return

        try:
            value = decode_payload(entry.result_type, response.result)
        except PayloadDecodeError as e:
            record_error(e)
            logger.error("Protocol mismatch in response to %s: %s", query.command, e)
            query.reject(QueryError(QueryErrorKind.DECODE, str(e), query.command))
            return
        query.resolve(value)

    def _arm_timer(self, query_id: int, timeout: float) -> asyncio.TimerHandle | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, query %d has no local timeout", query_id)
            return None
        return loop.call_later(timeout, self._expire, query_id, timeout)

    def _expire(self, query_id: int, timeout: float) -> None:
        entry = self._pending.pop(query_id, None)
        if entry is None:
            return
        query = entry.query
        logger.warning("%r timed out after %.1fs", query, timeout)
        query.reject(
            QueryError(QueryErrorKind.TIMEOUT, f"No response after {timeout:g}s", query.command)
        )
