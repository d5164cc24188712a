"""Error taxonomy for scan orchestration.

Every error carries the HTTP status the API layer answers with, so route
handlers can map any :class:`DashboardError` to a ``{"error": ...}`` body
without knowing the concrete type.
"""

from __future__ import annotations


class DashboardError(Exception):
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(DashboardError):
    """A required setting (e.g. the dispatch credential) is missing."""


class NotFoundError(DashboardError):
    http_status = 404


class WorkflowNotConfigured(NotFoundError):
    """The repository has no scan workflow the CI provider can run."""

    DEFAULT_MESSAGE = (
        "CodeQL workflow not found. Make sure the repository has CodeQL enabled."
    )

    def __init__(self, message: str = DEFAULT_MESSAGE) -> None:
        super().__init__(message)


class DispatchError(DashboardError):
    """Any other failure reported by the CI provider for a dispatch call."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientPollError(DashboardError):
    """A single completion check failed; the poll loop keeps going."""
