"""
Custom exception classes for the Rally to Azure DevOps migration tool.

Connectors translate API failures into this taxonomy so the orchestrator can
decide per class whether to retry, fail the item, or abort the run.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigurationError(MigrationError):
    """Raised when settings or the field mapping configuration are invalid."""


class TransientNetworkError(MigrationError):
    """Timeout, 5xx or throttling response. Retried with backoff."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after: float | None = retry_after


class NotFoundError(MigrationError):
    """Raised when the requested item does not exist."""


class AuthenticationError(MigrationError):
    """Credentials were rejected. Aborts the whole run."""


class ValidationError(MigrationError):
    """A required field is missing or a required value has no mapping."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field: str | None = field


class WorkflowTransitionError(MigrationError):
    """The target workflow rejected a state change."""

    def __init__(self, message: str, *, from_state: str | None = None, to_state: str | None = None) -> None:
        super().__init__(message)
        self.from_state: str | None = from_state
        self.to_state: str | None = to_state


class GraphExpansionError(MigrationError):
    """A branch of the dependency graph could not be fetched."""

    def __init__(self, message: str, *, source_id: str) -> None:
        super().__init__(message)
        self.source_id: str = source_id
