"""Custom exception hierarchy for repobridge.

This module provides a structured exception hierarchy that enables:
- Consistent error handling across the bridge
- Rich error context for debugging
- A clear split between protocol errors and state errors

Repository outcomes (timeouts, load failures, worker crashes) are NOT
exceptions: they are RepoConfig variants held in the config store. The
exceptions below cover programming and protocol problems only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from repobridge.query import QueryError


class RepoBridgeError(Exception):
    """Base exception for all repobridge errors.

    Attributes:
        message: Human-readable error description.
        context: Additional context for debugging.
        timestamp: When the error occurred.
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now()
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message


# =============================================================================
# Protocol Errors
# =============================================================================


class ProtocolError(RepoBridgeError):
    """Base class for frontend/backend protocol mismatches.

    These indicate version skew between the UI and the worker, not a
    repository problem, and are always surfaced loudly.
    """

    pass


class PayloadDecodeError(ProtocolError):
    """Raised when a payload does not match its declared shape."""

    def __init__(
        self,
        message: str = "Malformed payload",
        *,
        channel: str | None = None,
        payload_type: str | None = None,
        payload: Any = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if channel:
            ctx["channel"] = channel
        if payload_type:
            ctx["payload_type"] = payload_type
        if payload is not None:
            ctx["payload"] = repr(payload)[:100]  # Truncate long payloads
        super().__init__(message, context=ctx, cause=cause)


class UnknownVariantError(PayloadDecodeError):
    """Raised when a tagged payload names a variant that does not exist."""

    def __init__(
        self,
        tag: Any,
        *,
        union: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx["tag"] = tag
        super().__init__(
            f"Unknown {union} variant: {tag!r}",
            payload_type=union,
            context=ctx,
        )


# =============================================================================
# Query Errors
# =============================================================================


class QueryRejectedError(RepoBridgeError):
    """Raised when awaiting a query that was rejected."""

    def __init__(self, error: QueryError) -> None:
        self.error = error
        super().__init__(
            error.message,
            context={"kind": error.kind.value, "command": error.command},
        )


# =============================================================================
# State Errors
# =============================================================================


class StateError(RepoBridgeError):
    """Base class for operations attempted in the wrong state."""

    pass


class NoWorkspaceError(StateError):
    """Raised when a repository operation needs a loaded workspace."""

    def __init__(self, current: str = "unknown", operation: str | None = None) -> None:
        ctx: dict[str, Any] = {"current_config": current}
        if operation:
            ctx["attempted_operation"] = operation
        super().__init__("No repository workspace is loaded", context=ctx)


class MutationInProgressError(StateError):
    """Raised when a mutation is issued while another one is pending."""

    def __init__(self, pending_command: str, attempted_command: str | None = None) -> None:
        ctx = {"pending_command": pending_command}
        if attempted_command:
            ctx["attempted_command"] = attempted_command
        super().__init__("Another mutation is still pending", context=ctx)


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(RepoBridgeError):
    """Base class for transport-related errors."""

    pass


class TransportClosedError(TransportError):
    """Raised when sending on a transport that has been closed."""

    def __init__(self, operation: str = "unknown") -> None:
        super().__init__(
            "Transport is closed",
            context={"attempted_operation": operation},
        )


class WorkerSpawnError(TransportError):
    """Raised when the backend worker process cannot be started."""

    def __init__(
        self,
        message: str = "Failed to spawn worker",
        *,
        command: list[str] | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = " ".join(command)
        super().__init__(message, context=ctx, cause=cause)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(RepoBridgeError):
    """Base class for configuration-related errors."""

    pass


class ConfigLoadError(ConfigError):
    """Raised when configuration file fails to load."""

    def __init__(
        self,
        message: str = "Failed to load configuration",
        *,
        file_path: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if file_path:
            ctx["file_path"] = file_path
        super().__init__(message, context=ctx, cause=cause)


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""

    def __init__(
        self,
        message: str = "Configuration validation failed",
        *,
        field: str | None = None,
        value: Any = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if field:
            ctx["field"] = field
        if value is not None:
            ctx["value"] = str(value)[:100]
        super().__init__(message, context=ctx, cause=cause)


class ConfigSaveError(ConfigError):
    """Raised when configuration fails to save."""

    def __init__(
        self,
        message: str = "Failed to save configuration",
        *,
        file_path: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if file_path:
            ctx["file_path"] = file_path
        super().__init__(message, context=ctx, cause=cause)


# =============================================================================
# Error Registry for Categorization
# =============================================================================


@dataclass
class ErrorStats:
    """Track error statistics for monitoring."""

    total_count: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    recent_errors: list[tuple[datetime, str, str]] = field(default_factory=list)
    max_recent: int = 100

    def record(self, error: Exception) -> None:
        """Record an error occurrence."""
        self.total_count += 1
        type_name = type(error).__name__
        self.by_type[type_name] = self.by_type.get(type_name, 0) + 1

        self.recent_errors.append((datetime.now(), type_name, str(error)[:200]))
        if len(self.recent_errors) > self.max_recent:
            self.recent_errors.pop(0)

    def reset(self) -> None:
        """Clear all recorded statistics."""
        self.total_count = 0
        self.by_type.clear()
        self.recent_errors.clear()


# Global error stats tracker
error_stats = ErrorStats()


def record_error(error: Exception) -> None:
    """Record an error to global stats."""
    error_stats.record(error)
