"""Reactive state bridge between a version-control GUI and its backend worker.

Backend notifications arrive on typed channels and become subscribable
stores; UI mutations become settle-once queries whose results are tracked
until the UI has seen them.

Public API Usage:
    from repobridge import RepoSession, load_config
    from repobridge.testing import LoopbackTransport

    session = RepoSession(LoopbackTransport(), load_config())
    session.start()
    session.load_repository("/path/to/repo")

    # Spawning a real worker
    from repobridge import WorkerProcess

    worker = WorkerProcess(["gg-worker", "--stdio"])
    transport = await worker.start()
    session = RepoSession(transport)
"""

__version__ = "0.1.0"

# =============================================================================
# Core primitives
# =============================================================================

from repobridge.channel import Channel
from repobridge.query import Query, QueryClient, QueryError, QueryErrorKind, QueryStatus
from repobridge.store import ReadableStore, Store

# =============================================================================
# Wire messages
# =============================================================================

from repobridge.messages import (
    MUTATION_RESULT,
    REPO_CONFIG,
    ChangeId,
    CommitId,
    InitialConfig,
    LoadErrorConfig,
    MultilineString,
    MutationInternalError,
    MutationPreconditionError,
    MutationResult,
    MutationUnchanged,
    MutationUpdated,
    MutationUpdatedSelection,
    RepoConfig,
    RepoStatus,
    RevAuthor,
    RevHeader,
    RevId,
    TaggedUnion,
    TimeoutErrorConfig,
    TreePath,
    WorkerErrorConfig,
    WorkspaceConfig,
)
from repobridge.mutations import (
    AbandonRevisions,
    CheckoutRevision,
    CopyChanges,
    CreateRevision,
    DescribeRevision,
    DuplicateRevisions,
    InsertRevision,
    MoveChanges,
    MoveSource,
    Mutation,
)

# =============================================================================
# State Management
# =============================================================================

from repobridge.state import RepoSession, SessionSnapshot, StateEvent

# =============================================================================
# Transport and configuration
# =============================================================================

from repobridge.config import BridgeConfig, MutationPolicy, RetryPolicy, load_config, save_config
from repobridge.transport import JsonLinesTransport, Transport, WorkerProcess

__all__ = [
    "__version__",
    # Core primitives
    "Channel",
    "Query",
    "QueryClient",
    "QueryError",
    "QueryErrorKind",
    "QueryStatus",
    "ReadableStore",
    "Store",
    # Wire messages
    "MUTATION_RESULT",
    "REPO_CONFIG",
    "ChangeId",
    "CommitId",
    "InitialConfig",
    "LoadErrorConfig",
    "MultilineString",
    "MutationInternalError",
    "MutationPreconditionError",
    "MutationResult",
    "MutationUnchanged",
    "MutationUpdated",
    "MutationUpdatedSelection",
    "RepoConfig",
    "RepoStatus",
    "RevAuthor",
    "RevHeader",
    "RevId",
    "TaggedUnion",
    "TimeoutErrorConfig",
    "TreePath",
    "WorkerErrorConfig",
    "WorkspaceConfig",
    # Mutations
    "Mutation",
    "AbandonRevisions",
    "CheckoutRevision",
    "CopyChanges",
    "CreateRevision",
    "DescribeRevision",
    "DuplicateRevisions",
    "InsertRevision",
    "MoveChanges",
    "MoveSource",
    # State management
    "RepoSession",
    "SessionSnapshot",
    "StateEvent",
    # Transport and configuration
    "BridgeConfig",
    "MutationPolicy",
    "RetryPolicy",
    "load_config",
    "save_config",
    "JsonLinesTransport",
    "Transport",
    "WorkerProcess",
]
