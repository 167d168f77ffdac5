"""Wire message dataclasses and their JSON codec.

Every payload that crosses the worker boundary is a frozen dataclass. Tagged
unions (RepoConfig, MutationResult) are closed sets of dataclasses carrying a
``TAG`` class variable, encoded as JSON objects with a ``"type"`` key.

Decoding uses dacite in strict mode: missing fields, extra fields and wrong
types are all protocol errors, never silently coerced.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, ClassVar, Generic, TypeVar, Union

import dacite

from repobridge.exceptions import PayloadDecodeError, UnknownVariantError

T = TypeVar("T")

DACITE_CONFIG = dacite.Config(strict=True, check_types=True)


# =============================================================================
# Identifiers
# =============================================================================


@dataclass(frozen=True)
class CommitId:
    """A commit hash split into its unique prefix and the remainder."""

    hex: str
    prefix: str
    rest: str


@dataclass(frozen=True)
class ChangeId:
    """A change identifier split into its unique prefix and the remainder."""

    hex: str
    prefix: str
    rest: str


@dataclass(frozen=True)
class RevId:
    """A revision: the change it belongs to and its current commit."""

    change: ChangeId
    commit: CommitId


@dataclass(frozen=True)
class MultilineString:
    lines: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return "\n".join(self.lines)


@dataclass(frozen=True)
class RevAuthor:
    email: str
    name: str
    timestamp: str  # RFC 3339, as sent by the worker


@dataclass(frozen=True)
class TreePath:
    """A file path inside the repository plus its display form."""

    repo_path: str
    relative_path: str


# =============================================================================
# Repository State
# =============================================================================


@dataclass(frozen=True)
class RepoStatus:
    """Working-copy status. Always replaced wholesale, never patched."""

    operation_description: str
    working_copy: CommitId


@dataclass(frozen=True)
class RevHeader:
    """Summary of a single revision, as delivered on selection events."""

    id: RevId
    description: MultilineString
    author: RevAuthor
    has_conflict: bool
    is_working_copy: bool
    is_immutable: bool
    refs: list[str] = field(default_factory=list)
    parent_ids: list[CommitId] = field(default_factory=list)


# =============================================================================
# RepoConfig variants
# =============================================================================


@dataclass(frozen=True)
class InitialConfig:
    """No repository has been targeted yet."""

    TAG: ClassVar[str] = "Initial"


@dataclass(frozen=True)
class WorkspaceConfig:
    """A repository is loaded and ready for operations."""

    TAG: ClassVar[str] = "Workspace"

    absolute_path: str
    git_remotes: list[str]
    default_query: str
    latest_query: str
    status: RepoStatus
    theme: str | None
    indicate_disconnected_branches: bool


@dataclass(frozen=True)
class TimeoutErrorConfig:
    """Loading the repository exceeded its time budget."""

    TAG: ClassVar[str] = "TimeoutError"


@dataclass(frozen=True)
class LoadErrorConfig:
    """Loading failed for a known reason."""

    TAG: ClassVar[str] = "LoadError"

    absolute_path: str
    message: str


@dataclass(frozen=True)
class WorkerErrorConfig:
    """The backend worker itself failed."""

    TAG: ClassVar[str] = "WorkerError"

    message: str


RepoConfig = Union[
    InitialConfig,
    WorkspaceConfig,
    TimeoutErrorConfig,
    LoadErrorConfig,
    WorkerErrorConfig,
]


# =============================================================================
# MutationResult variants
# =============================================================================


@dataclass(frozen=True)
class MutationUnchanged:
    TAG: ClassVar[str] = "Unchanged"


@dataclass(frozen=True)
class MutationUpdated:
    TAG: ClassVar[str] = "Updated"

    new_status: RepoStatus


@dataclass(frozen=True)
class MutationUpdatedSelection:
    TAG: ClassVar[str] = "UpdatedSelection"

    new_status: RepoStatus
    new_selection: RevHeader


@dataclass(frozen=True)
class MutationPreconditionError:
    """The mutation was refused because the repository was not in the expected state."""

    TAG: ClassVar[str] = "PreconditionError"

    message: str


@dataclass(frozen=True)
class MutationInternalError:
    """The worker failed while executing the mutation."""

    TAG: ClassVar[str] = "InternalError"

    message: MultilineString


MutationResult = Union[
    MutationUnchanged,
    MutationUpdated,
    MutationUpdatedSelection,
    MutationPreconditionError,
    MutationInternalError,
]

MUTATION_FAILURES = (MutationPreconditionError, MutationInternalError)


def is_mutation_failure(result: MutationResult) -> bool:
    """Return True for results that should stay visible until dismissed."""
    return isinstance(result, MUTATION_FAILURES)


# =============================================================================
# Codec
# =============================================================================


class TaggedUnion(Generic[T]):
    """Codec for a closed set of dataclasses discriminated by ``"type"``.

    Example:
        config = REPO_CONFIG.decode({"type": "WorkerError", "message": "crashed"})
        assert REPO_CONFIG.encode(config)["type"] == "WorkerError"
    """

    def __init__(self, name: str, variants: list[type]) -> None:
        self.name = name
        self.variants: dict[str, type] = {}
        for variant in variants:
            tag = variant.TAG  # type: ignore[attr-defined]
            if tag in self.variants:
                raise ValueError(f"Duplicate {name} tag: {tag}")
            self.variants[tag] = variant

    def __repr__(self) -> str:
        return f"TaggedUnion({self.name!r})"

    def __contains__(self, value: object) -> bool:
        return type(value) in self.variants.values()

    def decode(self, data: Any) -> T:
        if not isinstance(data, dict):
            raise PayloadDecodeError(
                f"Expected an object for {self.name}, got {type(data).__name__}",
                payload_type=self.name,
                payload=data,
            )
        if "type" not in data:
            raise PayloadDecodeError(
                f"{self.name} payload has no 'type' tag",
                payload_type=self.name,
                payload=data,
            )
        tag = data["type"]
        variant = self.variants.get(tag) if isinstance(tag, str) else None
        if variant is None:
            raise UnknownVariantError(tag, union=self.name)
        body = {k: v for k, v in data.items() if k != "type"}
        return decode_dataclass(variant, body, type_name=f"{self.name}.{tag}")

    def encode(self, value: T) -> dict[str, Any]:
        if value not in self:
            raise TypeError(f"{type(value).__name__} is not a {self.name} variant")
        return {"type": type(value).TAG, **asdict(value)}  # type: ignore[call-overload, attr-defined]


REPO_CONFIG: TaggedUnion[RepoConfig] = TaggedUnion(
    "RepoConfig",
    [InitialConfig, WorkspaceConfig, TimeoutErrorConfig, LoadErrorConfig, WorkerErrorConfig],
)

MUTATION_RESULT: TaggedUnion[MutationResult] = TaggedUnion(
    "MutationResult",
    [
        MutationUnchanged,
        MutationUpdated,
        MutationUpdatedSelection,
        MutationPreconditionError,
        MutationInternalError,
    ],
)

PayloadType = Union[type, TaggedUnion]


def decode_dataclass(data_class: type[T], data: Any, *, type_name: str | None = None) -> T:
    """Decode a plain dataclass payload, raising PayloadDecodeError on mismatch."""
    name = type_name or data_class.__name__
    if not isinstance(data, dict):
        raise PayloadDecodeError(
            f"Expected an object for {name}, got {type(data).__name__}",
            payload_type=name,
            payload=data,
        )
    try:
        return dacite.from_dict(data_class=data_class, data=data, config=DACITE_CONFIG)
    except dacite.DaciteError as e:
        raise PayloadDecodeError(
            f"Invalid {name} payload: {e}",
            payload_type=name,
            payload=data,
            cause=e,
        ) from e


def decode_payload(payload_type: PayloadType, data: Any) -> Any:
    """Decode ``data`` as either a tagged union or a plain dataclass."""
    if isinstance(payload_type, TaggedUnion):
        return payload_type.decode(data)
    return decode_dataclass(payload_type, data)


def encode_payload(value: Any) -> Any:
    """Encode a message value into JSON-compatible data."""
    if value is None:
        return None
    for union in (REPO_CONFIG, MUTATION_RESULT):
        if value in union:
            return union.encode(value)
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    raise TypeError(f"Cannot encode {type(value).__name__} as a message payload")


def payload_type_name(payload_type: PayloadType) -> str:
    if isinstance(payload_type, TaggedUnion):
        return payload_type.name
    return payload_type.__name__
