"""Typed repository mutation requests.

Each mutation is a frozen dataclass naming the backend command it invokes.
The request body sent over the wire is ``{"mutation": <fields>}`` and the
backend answers with exactly one MutationResult.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

from repobridge.messages import CommitId, RevId, TreePath


@dataclass(frozen=True)
class Mutation:
    """Base class for mutation requests."""

    COMMAND: ClassVar[str] = ""

    def to_request(self) -> dict[str, Any]:
        return {"mutation": asdict(self)}

    def describe(self) -> str:
        """Short human-readable label for progress displays."""
        return self.COMMAND.replace("_", " ")


@dataclass(frozen=True)
class AbandonRevisions(Mutation):
    COMMAND: ClassVar[str] = "abandon_revisions"

    ids: list[CommitId] = field(default_factory=list)


@dataclass(frozen=True)
class CheckoutRevision(Mutation):
    """Make a revision the working-copy parent."""

    COMMAND: ClassVar[str] = "checkout_revision"

    id: RevId


@dataclass(frozen=True)
class CreateRevision(Mutation):
    """Create an empty revision on top of one or more parents."""

    COMMAND: ClassVar[str] = "create_revision"

    parent_ids: list[RevId] = field(default_factory=list)


@dataclass(frozen=True)
class DescribeRevision(Mutation):
    COMMAND: ClassVar[str] = "describe_revision"

    id: RevId
    new_description: str
    reset_author: bool = False


@dataclass(frozen=True)
class DuplicateRevisions(Mutation):
    COMMAND: ClassVar[str] = "duplicate_revisions"

    ids: list[CommitId] = field(default_factory=list)


@dataclass(frozen=True)
class InsertRevision(Mutation):
    """Move a revision so it sits between two others."""

    COMMAND: ClassVar[str] = "insert_revision"

    id: RevId
    after_id: RevId
    before_id: RevId


@dataclass(frozen=True)
class MoveSource(Mutation):
    """Rebase a revision onto new parents."""

    COMMAND: ClassVar[str] = "move_source"

    id: RevId
    parent_ids: list[CommitId] = field(default_factory=list)


@dataclass(frozen=True)
class MoveChanges(Mutation):
    """Move file changes out of one revision into another.

    An empty ``paths`` list moves every change.
    """

    COMMAND: ClassVar[str] = "move_changes"

    from_id: RevId
    to_id: CommitId
    paths: list[TreePath] = field(default_factory=list)


@dataclass(frozen=True)
class CopyChanges(Mutation):
    """Restore file contents from one revision into another."""

    COMMAND: ClassVar[str] = "copy_changes"

    from_id: CommitId
    to_id: RevId
    paths: list[TreePath] = field(default_factory=list)
