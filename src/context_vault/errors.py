"""Error taxonomy for the vault core.

Absent objects, chunks and relationships are not errors: lookups return
``None`` (or ``False`` for deletes) and the caller decides what absence means.
"""

from __future__ import annotations

from typing import Any


class VaultError(Exception):
    """Base class for every error raised by the vault core."""


class ValidationFailure(VaultError):
    """Input rejected before persistence (unknown type, empty name, bad date...)."""

    def __init__(self, message: str, *, field: str | None = None, details: Any = None):
        super().__init__(message)
        self.field = field
        self.details = details


class ConcurrencyConflict(VaultError):
    """The backing store stayed busy/locked past its timeout. Safe to retry."""


class ProviderFailure(VaultError):
    """The embedding provider failed to return a vector."""


class CascadeDeleteError(VaultError):
    """An object delete could not sweep its chunks and relationships."""

    def __init__(self, object_id: str, cause: BaseException):
        super().__init__(f"delete of {object_id} failed during cascade: {cause}")
        self.object_id = object_id
        self.cause = cause
