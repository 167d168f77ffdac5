"""Repository config state manager.

Tracks which RepoConfig variant currently describes the targeted repository,
and the live working-copy status that only exists while a Workspace is loaded.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, assert_never

from repobridge.exceptions import NoWorkspaceError
from repobridge.messages import (
    InitialConfig,
    LoadErrorConfig,
    RepoConfig,
    RepoStatus,
    TimeoutErrorConfig,
    WorkerErrorConfig,
    WorkspaceConfig,
)
from repobridge.state.events import RepoConfigChanged, RepoStatusChanged, StateEvent
from repobridge.store import Store

if TYPE_CHECKING:
    from textual.app import App

logger = logging.getLogger(__name__)


def describe_config(config: RepoConfig) -> str:
    """One-line summary of a config variant for status bars and logs."""
    match config:
        case InitialConfig():
            return "No repository loaded"
        case WorkspaceConfig(absolute_path=path, git_remotes=remotes):
            remote_count = f"{len(remotes)} remote" + ("" if len(remotes) == 1 else "s")
            return f"Workspace {path} ({remote_count})"
        case TimeoutErrorConfig():
            return "Timed out loading repository"
        case LoadErrorConfig(absolute_path=path, message=message):
            return f"Failed to load {path}: {message}"
        case WorkerErrorConfig(message=message):
            return f"Worker error: {message}"
        case _:
            assert_never(config)


class RepoConfigStateManager:
    """Manages the repository config lifecycle.

    Handles:
    - Replacing the config atomically on every backend notification
    - Seeding and resetting the status store as workspaces come and go
    - Guarding repository operations behind a loaded workspace

    Attributes:
        config: Store holding exactly one RepoConfig variant.
        status: Store holding the live RepoStatus, or None outside a workspace.
    """

    def __init__(self) -> None:
        """Initialize with no repository targeted."""
        self.config: Store[RepoConfig] = Store(InitialConfig(), name="repo_config")
        self.status: Store[RepoStatus | None] = Store(None, name="repo_status")
        self._app: App | None = None
        self._emit_callback: Callable[[StateEvent, dict[str, Any]], None] | None = None

    def connect_app(self, app: App) -> None:
        """Connect to a Textual App for message posting."""
        self._app = app

    def set_emit_callback(
        self, callback: Callable[[StateEvent, dict[str, Any]], None]
    ) -> None:
        """Set callback for emitting events to session subscribers."""
        self._emit_callback = callback

    def _post_message(self, message: Any) -> None:
        if self._app is not None:
            self._app.post_message(message)

    def _emit(self, event: StateEvent, **kwargs: Any) -> None:
        if self._emit_callback:
            self._emit_callback(event, kwargs)

    @property
    def current(self) -> RepoConfig:
        return self.config.read()

    @property
    def workspace(self) -> WorkspaceConfig | None:
        config = self.config.read()
        return config if isinstance(config, WorkspaceConfig) else None

    @property
    def is_workspace(self) -> bool:
        return self.workspace is not None

    def apply_config(self, config: RepoConfig) -> None:
        """Replace the current config with a fully-formed variant.

        Args:
            config: The new variant. Nothing from the previous variant is kept.
        """
        previous = self.config.read()
        if isinstance(config, InitialConfig) and not isinstance(previous, InitialConfig):
            logger.warning("Backend reset config to Initial from %s", previous.TAG)
        logger.info("Repo config %s -> %s", previous.TAG, describe_config(config))

        self.config.write(config)
        self._emit(StateEvent.REPO_CONFIG_CHANGED, config=config)
        self._post_message(RepoConfigChanged(config))

        if isinstance(config, WorkspaceConfig):
            self._set_status(config.status)
        elif self.status.read() is not None:
            self._set_status(None)

    def apply_status(self, status: RepoStatus) -> bool:
        """Replace the working-copy status.

        Returns:
            False if no workspace is loaded; the status is then dropped.
        """
        if not self.is_workspace:
            logger.warning(
                "Dropping status update while config is %s: %s",
                self.current.TAG,
                status.operation_description,
            )
            return False
        self._set_status(status)
        return True

    def require_workspace(self, operation: str | None = None) -> WorkspaceConfig:
        """Return the loaded workspace.

        Raises:
            NoWorkspaceError: If the current config is not a Workspace.
        """
        workspace = self.workspace
        if workspace is None:
            raise NoWorkspaceError(self.current.TAG, operation)
        return workspace

    def _set_status(self, status: RepoStatus | None) -> None:
        self.status.write(status)
        self._emit(StateEvent.REPO_STATUS_CHANGED, status=status)
        self._post_message(RepoStatusChanged(status))
