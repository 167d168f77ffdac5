"""State management package.

This package turns backend notifications into subscribable state. The main
RepoSession class composes focused state managers behind one API.

For external observation (CLI tools, tests), use `RepoSession.to_snapshot()`.
"""

from repobridge.state.events import (
    MutationCleared,
    MutationSettled,
    MutationStarted,
    ProtocolErrorOccurred,
    RepoConfigChanged,
    RepoStatusChanged,
    RevisionSelected,
    StateEvent,
    StateMessage,
    WorkerExited,
)
from repobridge.state.mutation_tracker import MutationTracker
from repobridge.state.repo_config_manager import RepoConfigStateManager, describe_config
from repobridge.state.selection_manager import RevisionSelectionManager
from repobridge.state.session import RepoSession
from repobridge.state.snapshot import MutationSnapshot, SessionSnapshot

__all__ = [
    # Main session class
    "RepoSession",
    # Managers
    "RepoConfigStateManager",
    "RevisionSelectionManager",
    "MutationTracker",
    "describe_config",
    # Snapshot for external observation
    "SessionSnapshot",
    "MutationSnapshot",
    # Events
    "StateEvent",
    "StateMessage",
    "RepoConfigChanged",
    "RepoStatusChanged",
    "RevisionSelected",
    "MutationStarted",
    "MutationSettled",
    "MutationCleared",
    "ProtocolErrorOccurred",
    "WorkerExited",
]
