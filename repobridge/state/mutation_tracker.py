"""Single-slot tracker for the in-flight repository mutation.

The tracker holds at most one mutation Query. A new mutation either is
refused while one is pending (MutationPolicy.REJECT) or takes the slot over
(MutationPolicy.REPLACE). Settlement of a query that no longer occupies the
slot is ignored, so the UI never shows a result for a mutation it is not
tracking.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from repobridge.config import MutationPolicy
from repobridge.exceptions import MutationInProgressError
from repobridge.messages import MutationResult, is_mutation_failure
from repobridge.query import Query, QueryError
from repobridge.state.events import (
    MutationCleared,
    MutationSettled,
    MutationStarted,
    StateEvent,
)
from repobridge.store import Store

if TYPE_CHECKING:
    from textual.app import App

logger = logging.getLogger(__name__)


class MutationTracker:
    """Holds the current mutation and exposes its outcome.

    Successful results clear the slot (when ``clear_on_success`` is set) after
    ``on_success`` has applied them. Failures and rejections stay in the slot
    until ``clear()`` or the next mutation.

    Attributes:
        current: Store holding the tracked query, or None.
        policy: Behaviour when a mutation is issued while one is pending.
    """

    def __init__(
        self,
        policy: MutationPolicy = MutationPolicy.REPLACE,
        *,
        clear_on_success: bool = True,
        on_success: Callable[[MutationResult], None] | None = None,
    ) -> None:
        self.current: Store[Query[MutationResult] | None] = Store(None, name="current_mutation")
        self.policy = policy
        self.clear_on_success = clear_on_success
        self.on_success = on_success
        self._app: App | None = None
        self._emit_callback: Callable[[StateEvent, dict[str, Any]], None] | None = None

    def connect_app(self, app: App) -> None:
        self._app = app

    def set_emit_callback(
        self, callback: Callable[[StateEvent, dict[str, Any]], None]
    ) -> None:
        self._emit_callback = callback

    def _post_message(self, message: Any) -> None:
        if self._app is not None:
            self._app.post_message(message)

    def _emit(self, event: StateEvent, **kwargs: Any) -> None:
        if self._emit_callback:
            self._emit_callback(event, kwargs)

    @property
    def query(self) -> Query[MutationResult] | None:
        return self.current.read()

    @property
    def is_pending(self) -> bool:
        query = self.current.read()
        return query is not None and query.is_pending

    @property
    def result(self) -> MutationResult | None:
        """The held result, if the tracked query resolved."""
        query = self.current.read()
        if query is None or not query.is_resolved:
            return None
        return query.value

    @property
    def error(self) -> QueryError | None:
        """The rejection, if the tracked query was rejected."""
        query = self.current.read()
        return None if query is None else query.error

    def ensure_available(self, command: str | None = None) -> None:
        """Check that a new mutation may be issued.

        Raises:
            MutationInProgressError: Under REJECT policy, if one is pending.
        """
        held = self.current.read()
        if self.policy is MutationPolicy.REJECT and held is not None and held.is_pending:
            raise MutationInProgressError(held.command, command)

    def begin(self, query: Query[MutationResult]) -> None:
        """Place a newly issued mutation query into the slot.

        Raises:
            MutationInProgressError: Under REJECT policy, if one is pending.
        """
        self.ensure_available(query.command)
        held = self.current.read()
        if held is not None and held.is_pending:
            logger.info("Abandoning pending %r in favour of %r", held, query)

        self.current.write(query)
        self._emit(StateEvent.MUTATION_STARTED, query=query)
        self._post_message(MutationStarted(query))
        query.add_done_callback(self._on_settled)

    def clear(self) -> None:
        """Dismiss the held mutation, pending or settled."""
        if self.current.read() is None:
            return
        self.current.write(None)
        self._emit(StateEvent.MUTATION_CLEARED)
        self._post_message(MutationCleared())

    def _on_settled(self, query: Query[MutationResult]) -> None:
        if self.current.read() is not query:
            logger.debug("Ignoring settlement of abandoned %r", query)
            return

        cleared = False
        if query.is_resolved and not is_mutation_failure(query.value):  # type: ignore[arg-type]
            logger.debug("%r succeeded: %s", query, query.value)
            if self.on_success is not None:
                self.on_success(query.value)  # type: ignore[arg-type]
            cleared = self.clear_on_success
        elif query.is_resolved:
            logger.info("%r failed: %s", query, query.value)
        else:
            logger.warning("%r rejected: %s", query, query.error)

        # Re-written so subscribers observe the settled query
        self.current.write(None if cleared else query)
        self._emit(StateEvent.MUTATION_SETTLED, query=query, cleared=cleared)
        self._post_message(MutationSettled(query, cleared))
