"""RepoSession: the context object for one backend worker.

The session owns the channels, stores and query client for a single
transport, and composes the focused state managers behind one API.
Construct it once per worker, ``start()`` it before any backend traffic
and ``shutdown()`` it when done.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from repobridge.channel import Channel
from repobridge.config import BridgeConfig
from repobridge.messages import (
    MUTATION_RESULT,
    REPO_CONFIG,
    LoadErrorConfig,
    MutationResult,
    MutationUpdated,
    MutationUpdatedSelection,
    RepoConfig,
    RepoStatus,
    RevHeader,
    TimeoutErrorConfig,
    WorkerErrorConfig,
)
from repobridge.mutations import Mutation
from repobridge.query import Query, QueryClient, QueryErrorKind
from repobridge.state.events import (
    ProtocolErrorOccurred,
    StateEvent,
    WorkerExited,
)
from repobridge.state.mutation_tracker import MutationTracker
from repobridge.state.repo_config_manager import RepoConfigStateManager
from repobridge.state.selection_manager import RevisionSelectionManager
from repobridge.state.snapshot import MutationSnapshot, SessionSnapshot
from repobridge.store import ReadableStore
from repobridge.transport import Transport, Unlisten

if TYPE_CHECKING:
    from textual.app import App

    from repobridge.exceptions import ProtocolError

logger = logging.getLogger(__name__)

LOAD_COMMAND = "load_repository"

# Oldest entries are dropped beyond this many
MAX_PROTOCOL_ERRORS = 100


class RepoSession:
    """Reactive repository state fed by one backend transport.

    Like the managers it composes, the session notifies in two ways:

    1. **Callback-based subscriptions**: ``subscribe()`` / ``unsubscribe()``
       for components outside the Textual widget tree.

    2. **Textual Message posting**: after ``connect_app()``, state changes
       post Messages that widgets handle with ``on_*`` methods.

    Stores are also exposed read-only for consumers that want to bind to a
    single value.

    Example:
        session = RepoSession(transport, load_config())
        session.start()
        session.load_repository("/path/to/repo")
        ...
        session.mutate(CheckoutRevision(id=rev_id))
    """

    def __init__(self, transport: Transport, settings: BridgeConfig | None = None) -> None:
        self.transport = transport
        self.settings = settings or BridgeConfig()
        self.queries = QueryClient(transport, self.settings)

        self._repo_manager = RepoConfigStateManager()
        self._selection_manager = RevisionSelectionManager()
        self._mutation_tracker = MutationTracker(
            self.settings.mutation_policy,
            clear_on_success=self.settings.clear_on_success,
            on_success=self._apply_mutation_result,
        )

        names = self.settings.channels
        self.config_channel: Channel[RepoConfig] = Channel(
            transport, names.repo_config, REPO_CONFIG, on_error=self.report_protocol_error
        )
        self.status_channel: Channel[RepoStatus] = Channel(
            transport, names.repo_status, RepoStatus, on_error=self.report_protocol_error
        )
        self.selection_channel: Channel[RevHeader] = Channel(
            transport, names.revision_select, RevHeader, on_error=self.report_protocol_error
        )
        self._selection_manager.attach_channel(self.selection_channel)

        self.protocol_errors: list[ProtocolError] = []
        self._listeners: dict[StateEvent, list[Callable[..., Any]]] = {e: [] for e in StateEvent}
        self._unlisten: list[Unlisten] = []
        self._current_load: Query[RepoConfig] | None = None
        self._started = False
        self._app: App | None = None

        for manager in (self._repo_manager, self._selection_manager, self._mutation_tracker):
            manager.set_emit_callback(self._emit_from_manager)

    def __enter__(self) -> RepoSession:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.shutdown()

    def _emit_from_manager(self, event: StateEvent, kwargs: dict[str, Any]) -> None:
        self.emit(event, **kwargs)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Register with the transport.

        Registration order is fixed: config channel, status channel,
        selection channel, then the response and close handlers. Nothing is
        received before ``start()``.
        """
        if self._started:
            logger.debug("Session already started")
            return
        self._unlisten = [
            self.config_channel.listen(self._repo_manager.apply_config),
            self.status_channel.listen(self._repo_manager.apply_status),
            self.selection_channel.listen(self._selection_manager.on_selected),
        ]
        self.queries.attach()
        self.transport.set_close_handler(self._on_transport_closed)
        self._started = True
        logger.info(
            "Session started on %s",
            ", ".join(c.name for c in self.channels),
        )

    def shutdown(self) -> None:
        """Unregister everything registered by ``start()``.

        Pending queries stay pending; their responses are no longer received.
        """
        if not self._started:
            return
        self.transport.set_close_handler(None)
        self.queries.detach()
        for unlisten in self._unlisten:
            unlisten()
        self._unlisten = []
        self._started = False
        logger.info("Session shut down")

    @property
    def channels(self) -> tuple[Channel[Any], ...]:
        return (self.config_channel, self.status_channel, self.selection_channel)

    # =========================================================================
    # Connection and Event System
    # =========================================================================

    def connect_app(self, app: App) -> None:
        """Connect to a Textual App for message posting."""
        self._app = app
        self._repo_manager.connect_app(app)
        self._selection_manager.connect_app(app)
        self._mutation_tracker.connect_app(app)

    def _post_message(self, message: Any) -> None:
        if self._app is not None:
            self._app.post_message(message)

    def subscribe(self, event: StateEvent, callback: Callable[..., Any]) -> None:
        """Register callback for state event.

        Args:
            event: The event type to subscribe to.
            callback: Called with the event's keyword arguments.
        """
        self._listeners.setdefault(event, []).append(callback)

    def unsubscribe(self, event: StateEvent, callback: Callable[..., Any]) -> None:
        """Remove callback from event. Unknown callbacks are ignored."""
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event: StateEvent, **kwargs: Any) -> None:
        """Dispatch event to all subscribers."""
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(**kwargs)
            except Exception:
                logger.exception("Subscriber for %s raised", event.value)

    # =========================================================================
    # State access
    # =========================================================================

    @property
    def repo_config(self) -> RepoConfig:
        return self._repo_manager.current

    @property
    def repo_status(self) -> RepoStatus | None:
        return self._repo_manager.status.read()

    @property
    def selection(self) -> RevHeader | None:
        return self._selection_manager.selection.read()

    @property
    def is_workspace(self) -> bool:
        return self._repo_manager.is_workspace

    @property
    def current_mutation(self) -> Query[MutationResult] | None:
        return self._mutation_tracker.query

    @property
    def config_store(self) -> ReadableStore[RepoConfig]:
        return self._repo_manager.config.readonly()

    @property
    def status_store(self) -> ReadableStore[RepoStatus | None]:
        return self._repo_manager.status.readonly()

    @property
    def selection_store(self) -> ReadableStore[RevHeader | None]:
        return self._selection_manager.selection.readonly()

    @property
    def mutation_store(self) -> ReadableStore[Query[MutationResult] | None]:
        return self._mutation_tracker.current.readonly()

    # =========================================================================
    # Repository loading
    # =========================================================================

    def load_repository(self, path: str | None = None) -> Query[RepoConfig]:
        """Ask the backend to load a repository.

        The answer is written to the config store only if no later load has
        been issued in the meantime. A local timeout writes TimeoutError.

        Args:
            path: Repository path, or None for the backend's default.
        """
        query = self._send_load(path)
        query.add_done_callback(self._on_load_settled)
        return query

    async def load_repository_with_retry(self, path: str | None = None) -> Query[RepoConfig]:
        """Like ``load_repository`` but retries timeouts per ``settings.retry``.

        Only the final attempt's outcome is applied to the config store. A
        ``load_repository()`` issued while this is retrying supersedes it: no
        further attempt is sent and the returned query is not applied.
        """
        attempts: list[Query[RepoConfig]] = []

        def track(query: Query[RepoConfig]) -> None:
            attempts.append(query)
            self._track_load(query)

        query = await self.queries.send_with_retry(
            LOAD_COMMAND,
            {"path": path},
            REPO_CONFIG,
            timeout=self.settings.load_timeout,
            on_attempt=track,
            abandoned=lambda: self._current_load is not attempts[-1],
        )
        self._on_load_settled(query)
        return query

    def _send_load(self, path: str | None) -> Query[RepoConfig]:
        query = self.queries.send(
            LOAD_COMMAND, {"path": path}, REPO_CONFIG, timeout=self.settings.load_timeout
        )
        self._track_load(query)
        return query

    def _track_load(self, query: Query[RepoConfig]) -> None:
        logger.info("Loading repository %s (%r)", query.request.get("path") or "<default>", query)
        self._current_load = query

    def _on_load_settled(self, query: Query[RepoConfig]) -> None:
        if query is not self._current_load:
            logger.debug("Ignoring superseded %r", query)
            return

        if query.is_resolved:
            self._repo_manager.apply_config(query.value)  # type: ignore[arg-type]
            return

        error = query.error
        assert error is not None
        match error.kind:
            case QueryErrorKind.TIMEOUT:
                self._repo_manager.apply_config(TimeoutErrorConfig())
            case QueryErrorKind.BACKEND:
                path = query.request.get("path") or ""
                self._repo_manager.apply_config(LoadErrorConfig(absolute_path=path, message=error.message))
            case QueryErrorKind.TRANSPORT:
                self._repo_manager.apply_config(WorkerErrorConfig(message=error.message))
            case QueryErrorKind.DECODE:
                logger.error("Load answer was not a valid config; keeping %s", self.repo_config.TAG)
            case QueryErrorKind.WORKER_EXITED:
                # The close handler has already written WorkerError
                pass

    # =========================================================================
    # Mutations and selection
    # =========================================================================

    def mutate(self, mutation: Mutation) -> Query[MutationResult]:
        """Issue a mutation and place it into the tracker slot.

        Raises:
            NoWorkspaceError: If no workspace is loaded.
            MutationInProgressError: Under REJECT policy, if one is pending.
        """
        self._repo_manager.require_workspace(mutation.COMMAND)
        self._mutation_tracker.ensure_available(mutation.COMMAND)
        logger.info("Mutating: %s", mutation.describe())
        query = self.queries.send(mutation.COMMAND, mutation.to_request(), MUTATION_RESULT)
        self._mutation_tracker.begin(query)
        return query

    def clear_mutation(self) -> None:
        """Dismiss the held mutation result."""
        self._mutation_tracker.clear()

    def select_revision(self, header: RevHeader) -> None:
        """Select a revision in the UI and tell the backend.

        Raises:
            NoWorkspaceError: If no workspace is loaded.
        """
        self._repo_manager.require_workspace("select_revision")
        self._selection_manager.select(header)

    def _apply_mutation_result(self, result: MutationResult) -> None:
        match result:
            case MutationUpdatedSelection(new_status=status, new_selection=header):
                self._repo_manager.apply_status(status)
                self._selection_manager.on_selected(header)
            case MutationUpdated(new_status=status):
                self._repo_manager.apply_status(status)
            case _:
                pass

    # =========================================================================
    # Failures
    # =========================================================================

    def report_protocol_error(self, error: ProtocolError) -> None:
        """Record a payload the frontend could not understand."""
        self.protocol_errors.append(error)
        if len(self.protocol_errors) > MAX_PROTOCOL_ERRORS:
            self.protocol_errors.pop(0)
        self.emit(StateEvent.PROTOCOL_ERROR, error=error)
        self._post_message(ProtocolErrorOccurred(error))

    def _on_transport_closed(self, reason: str) -> None:
        rejected = self.queries.reject_all(QueryErrorKind.WORKER_EXITED, reason)
        logger.warning("Worker exited (%s), rejected %d pending queries", reason, rejected)
        self._repo_manager.apply_config(WorkerErrorConfig(message=reason))
        self.emit(StateEvent.WORKER_EXITED, reason=reason)
        self._post_message(WorkerExited(reason))

    def hung_queries(self) -> list[Query[Any]]:
        return self.queries.hung_queries()

    # =========================================================================
    # State Query (External Observation)
    # =========================================================================

    def to_snapshot(self) -> SessionSnapshot:
        """Create an immutable snapshot of the current state.

        Use this for CLI tools and tests that need to inspect state without
        subscribing to it.
        """
        query = self._mutation_tracker.query
        mutation = None
        if query is not None:
            mutation = MutationSnapshot(
                command=query.command,
                status=query.status.value,
                result=self._mutation_tracker.result,
                error=query.error.message if query.error else None,
            )
        return SessionSnapshot(
            repo_config=self.repo_config,
            repo_status=self.repo_status,
            selection=self.selection,
            mutation=mutation,
            pending_commands=[q.command for q in self.queries.pending_queries()],
            hung_commands=[q.command for q in self.hung_queries()],
            protocol_errors=[str(e) for e in self.protocol_errors],
        )
