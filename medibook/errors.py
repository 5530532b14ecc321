"""
Errors Module
=============
Exception hierarchy shared by the MediBook services. The HTTP layer maps
each class to a status code and a short, patient-presentable message; the
provider cause is kept on ``__cause__`` and logged.
"""

from __future__ import annotations

from typing import Optional


class MediBookError(Exception):
    """Base class for all application errors."""


class NotConfiguredError(MediBookError):
    """A third-party service needed for the operation has no credentials."""


class NotFoundError(MediBookError):
    """A doctor, clinic or appointment id does not exist."""


class SlotConflictError(MediBookError):
    """The requested slot overlaps an existing booking for the doctor."""


class ProviderError(MediBookError):
    """A third-party provider call failed.

    Attributes:
        status_code: HTTP status returned by the provider, when known.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InferenceError(MediBookError):
    """Base class for structured-inference failures."""


class RetriesExhaustedError(InferenceError):
    """The model stayed overloaded for every allowed attempt."""

    def __init__(self, name: str, attempts: int) -> None:
        super().__init__(
            f"Failed to get a response from {name} after {attempts} attempts."
        )
        self.name = name
        self.attempts = attempts


class InferenceOutputError(InferenceError):
    """The model returned no output or output that fails schema validation."""
