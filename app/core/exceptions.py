"""Custom exception types for domain and API layers."""
from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base app exception."""

    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    """Validation failure for user input, e.g. a malformed schedule spec."""

    status_code = 400


class NotFoundError(AppError):
    """Unknown schedule/execution id, or an id not owned by the given agent."""

    status_code = 404


class InvalidTransitionError(AppError):
    """An execution or trace was asked to move along an illegal status edge."""

    status_code = 409


class RegistrationError(AppError):
    """The trigger registry rejected a cron expression or registration call."""

    status_code = 422


class ExecutionError(AppError):
    """The execution collaborator failed; captured on the execution record."""


class PersistenceError(AppError):
    """The backing store is unavailable or rejected a write."""
