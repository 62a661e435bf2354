"""Custom exception hierarchy for Stratus.

All stratus-specific exceptions inherit from StratusError, enabling
callers to catch every library failure with a single except clause.
Errors raised while an orchestrated step is running carry the step
description in ``step``.
"""

from __future__ import annotations


class StratusError(Exception):
    """Base exception for all Stratus errors."""

    def __init__(self, message: str = "", *, step: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"{self.step} {self.message}".strip()
        return self.message


class NotFoundError(StratusError):
    """Raised when a cloud object, report or job does not exist."""


class JobNotFoundError(NotFoundError):
    """Raised when a job id was never submitted."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"job {job_id!r} not found")


class ValidationError(StratusError):
    """Raised for malformed input: directory specs, transfer patterns, permission references."""


class ProviderError(StratusError):
    """Raised when a cloud or storage API call fails."""


class UnsupportedError(StratusError):
    """Raised when the active provider does not offer a capability."""


class OperationTimeoutError(StratusError):
    """Raised when an operation exceeds its deadline."""
