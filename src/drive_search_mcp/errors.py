"""Error taxonomy for the Drive search index.

Batch operations never raise these for partial failures; they accumulate
messages into JobResult / SyncResult instead. Only precondition failures
(missing authentication, exhausted fetch budget) end an operation early.
"""

from __future__ import annotations


class DriveSearchError(Exception):
    """Base class for all package errors."""


class AuthenticationError(DriveSearchError):
    """The source connector has no valid credentials. Never retried."""


class TransientFetchError(DriveSearchError):
    """A single page fetch failed; callers may retry or skip it."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AggregateFailureError(DriveSearchError):
    """Too many transient failures; the operation was aborted."""

    def __init__(self, message: str, errors: list[str]):
        super().__init__(message)
        self.errors = list(errors)


class CorruptPersistedStateError(DriveSearchError):
    """A persisted snapshot could not be parsed or is inconsistent."""


class StoreError(DriveSearchError):
    """The durable store failed to read or write."""


class IndexNotReadyError(DriveSearchError):
    """A mutating index operation ran before initialize()."""


class InvalidRecordError(DriveSearchError, ValueError):
    """A record batch is malformed (missing or duplicate ids)."""
