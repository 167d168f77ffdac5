"""Immutable session snapshot for external observation.

This module provides a read-only view of a RepoSession suitable for CLI
tools, transcript replay and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from repobridge.messages import (
    MutationResult,
    RepoConfig,
    RepoStatus,
    RevHeader,
    WorkspaceConfig,
    encode_payload,
)


@dataclass(frozen=True)
class MutationSnapshot:
    """The mutation held by the tracker at snapshot time."""

    command: str
    status: str
    result: MutationResult | None = None
    error: str | None = None


@dataclass
class SessionSnapshot:
    """Immutable snapshot of session state.

    Example:
        snapshot = session.to_snapshot()
        if snapshot.is_workspace:
            print(snapshot.workspace.absolute_path)
    """

    repo_config: RepoConfig
    repo_status: RepoStatus | None
    selection: RevHeader | None
    mutation: MutationSnapshot | None = None

    # Commands of queries still awaiting an answer
    pending_commands: list[str] = field(default_factory=list)
    hung_commands: list[str] = field(default_factory=list)

    protocol_errors: list[str] = field(default_factory=list)

    @property
    def is_workspace(self) -> bool:
        return isinstance(self.repo_config, WorkspaceConfig)

    @property
    def workspace(self) -> WorkspaceConfig | None:
        return self.repo_config if isinstance(self.repo_config, WorkspaceConfig) else None

    def to_dict(self) -> dict[str, Any]:
        """Render as JSON-compatible data using the wire encoding."""
        mutation = None
        if self.mutation is not None:
            mutation = {
                "command": self.mutation.command,
                "status": self.mutation.status,
                "result": encode_payload(self.mutation.result),
                "error": self.mutation.error,
            }
        return {
            "repo_config": encode_payload(self.repo_config),
            "repo_status": encode_payload(self.repo_status),
            "selection": encode_payload(self.selection),
            "mutation": mutation,
            "pending_commands": list(self.pending_commands),
            "hung_commands": list(self.hung_commands),
            "protocol_errors": list(self.protocol_errors),
        }
