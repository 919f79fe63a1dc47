"""Error taxonomy shared by the store, adapters and sync controller."""

from __future__ import annotations

from typing import Optional


class NoteSyncError(Exception):
    """Base class for every error raised by notesync."""


class ValidationError(NoteSyncError):
    """Caller-correctable problem, e.g. an empty note or a 4xx response.

    Raised before any local state is touched when detected client-side.
    Resending the same payload will fail again.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class TransportError(NoteSyncError):
    """Transient infrastructure failure (network, timeout, 5xx). Retryable."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class StorageError(NoteSyncError):
    """The durable local cache is unavailable or holds corrupt data."""
