"""Error categories shared by the store, services, board and surfaces."""
from __future__ import annotations


class LabtrackError(Exception):
    """Base class; ``message`` is what gets shown to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LabtrackError, ValueError):
    """A required field is missing or malformed. Raised before any store call."""


class NotFoundError(LabtrackError, LookupError):
    """The referenced entity does not exist."""


class StoreError(LabtrackError, RuntimeError):
    """The record store rejected or failed to complete a call."""
