"""State events and Textual message classes.

This module defines the events dispatched from state changes and the
corresponding Textual Message classes a UI can handle with ``on_*`` methods.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from textual.message import Message

if TYPE_CHECKING:
    from repobridge.exceptions import ProtocolError
    from repobridge.messages import MutationResult, RepoConfig, RepoStatus, RevHeader
    from repobridge.query import Query


class StateEvent(Enum):
    """Events that can be dispatched from state changes."""

    REPO_CONFIG_CHANGED = "repo_config_changed"
    REPO_STATUS_CHANGED = "repo_status_changed"
    REVISION_SELECTED = "revision_selected"
    # Mutation events
    MUTATION_STARTED = "mutation_started"
    MUTATION_SETTLED = "mutation_settled"
    MUTATION_CLEARED = "mutation_cleared"
    # Failure events
    PROTOCOL_ERROR = "protocol_error"
    WORKER_EXITED = "worker_exited"


# =============================================================================
# Textual Messages for State Events
# =============================================================================


class StateMessage(Message):
    """Base class for state change messages."""

    pass


class RepoConfigChanged(StateMessage):
    """Posted when the backend replaces the repository config."""

    def __init__(self, config: RepoConfig) -> None:
        super().__init__()
        self.config = config


class RepoStatusChanged(StateMessage):
    """Posted when the working-copy status changes (None when unloaded)."""

    def __init__(self, status: RepoStatus | None) -> None:
        super().__init__()
        self.status = status


class RevisionSelected(StateMessage):
    """Posted when the backend selects a revision."""

    def __init__(self, header: RevHeader) -> None:
        super().__init__()
        self.header = header


class MutationStarted(StateMessage):
    """Posted when a mutation query takes the tracker slot."""

    def __init__(self, query: Query[MutationResult]) -> None:
        super().__init__()
        self.query = query


class MutationSettled(StateMessage):
    """Posted when the tracked mutation settles.

    ``cleared`` is True when a successful result emptied the slot.
    """

    def __init__(self, query: Query[MutationResult], cleared: bool) -> None:
        super().__init__()
        self.query = query
        self.cleared = cleared


class MutationCleared(StateMessage):
    """Posted when a held mutation result is dismissed."""

    pass


class ProtocolErrorOccurred(StateMessage):
    """Posted when the backend sent a payload the frontend cannot decode."""

    def __init__(self, error: ProtocolError) -> None:
        super().__init__()
        self.error = error


class WorkerExited(StateMessage):
    """Posted when the transport to the worker closes."""

    def __init__(self, reason: str) -> None:
        super().__init__()
        self.reason = reason


def describe_event(event: StateEvent, kwargs: dict[str, Any]) -> str:
    """One-line rendering of an event for logs and the CLI."""
    details = ", ".join(f"{k}={v!r}" for k, v in kwargs.items())
    return f"{event.value}({details})" if details else event.value
