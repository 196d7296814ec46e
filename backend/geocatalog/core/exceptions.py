"""Exception taxonomy for the classification pipeline.

Errors fall into four groups that the orchestrator treats differently:

- InputError: the candidate dataset itself is unusable (no geometries,
  unsupported geometry type). The file is recorded as "no-geom" or
  "weird-file" and the corpus is left untouched.
- InvariantViolation: an internal consistency rule was broken (duplicate
  live fid, incomplete correspondence). Fatal for the ingestion, never
  retried, nothing is committed.
- ExternalProviderError: the spatial engine or the format conversion
  utility failed. Transient failures are retried with backoff, permanent
  failures mark the file as corrupted.
- QueueFullError: the pending-match admission ceiling has been reached.

Partial or missing geometry matches are not errors; they are normal
classification outcomes recorded as pending match records.
"""

from __future__ import annotations

from typing import Any


class GeoCatalogError(Exception):
    """Base exception carrying an optional context mapping."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(
                f"{key}={value}" for key, value in self.context.items()
            )
            return f"{self.message} ({context_str})"
        return self.message


class InputError(GeoCatalogError):
    """Raised for empty or malformed candidate sets.

    Attributes:
        reason: Bookkeeping label stored on the match record
            ("no-geom" or "weird-file").
    """

    def __init__(
        self,
        message: str,
        reason: str = "weird-file",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.reason = reason


class InvariantViolation(GeoCatalogError):
    """Raised when an ingestion would break a corpus invariant."""


class ExternalProviderError(GeoCatalogError):
    """Base class for spatial engine and conversion utility failures."""


class TransientProviderError(ExternalProviderError):
    """Provider failure worth retrying (timeouts, dropped connections)."""


class PermanentProviderError(ExternalProviderError):
    """Provider failure that will not go away on retry."""


class ConversionError(PermanentProviderError):
    """The format conversion utility cannot read or reproject a file."""


class QueueFullError(GeoCatalogError):
    """Raised when the pending-match queue reached its admission ceiling."""


class NotFoundError(GeoCatalogError):
    """Raised when a collection, match or upload does not exist."""
