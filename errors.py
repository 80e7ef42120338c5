"""Error taxonomy shared by the activity progression engine."""

from __future__ import annotations

from typing import Any, Optional


class ActivityError(Exception):
    """Base class for domain errors raised by the activity engine."""

    status_code = 500

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(ActivityError):
    """Raised when a question, config or required user record does not exist."""

    status_code = 404


class ValidationError(ActivityError):
    """Raised when a submission or content payload is missing fields or malformed."""

    status_code = 400


class ConflictError(ActivityError):
    """Raised when creating a record whose key already exists."""

    status_code = 409


class AccessDeniedError(ActivityError):
    """Raised when the access policy refuses paid content to a user."""

    status_code = 403


class TransientStorageError(ActivityError):
    """Retryable storage failure (lock timeout, unavailable database)."""

    status_code = 503


class AnalyticsSinkError(ActivityError):
    """Raised by the event sink; never surfaced to API callers."""


__all__ = [
    "ActivityError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "AccessDeniedError",
    "TransientStorageError",
    "AnalyticsSinkError",
]
