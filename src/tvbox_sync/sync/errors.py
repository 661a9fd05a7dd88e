"""Error taxonomy for the sync engine.

Every error raised across a component boundary derives from ``SyncError``.
The ``retryable`` flag decides whether a failed task re-enters the queue
with backoff or is retired immediately.
"""

from typing import Optional

__all__ = [
    "SyncError",
    "StorageFailure",
    "NetworkFailure",
    "IntegrityFailure",
    "CapacityExceeded",
    "ProtocolFailure",
    "AuthFailure",
    "NotFound",
    "EditRejected",
    "InvalidTransition",
]


class SyncError(Exception):
    """Base class for sync engine errors."""

    retryable = False


class StorageFailure(SyncError):
    """Local disk or database error."""

    retryable = True


class NetworkFailure(SyncError):
    """Transient network error (timeout, connection reset, 5xx)."""

    retryable = True


class IntegrityFailure(SyncError):
    """Checksum mismatch on downloaded or stored content."""

    def __init__(self, content_id: str, expected: str, actual: str):
        self.content_id = content_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {content_id}: expected {expected[:12]}, got {actual[:12]}"
        )


class CapacityExceeded(SyncError):
    """Cache cannot make room without evicting pinned content."""

    def __init__(self, content_id: str, needed: int, available: int):
        self.content_id = content_id
        self.needed = needed
        self.available = available
        super().__init__(
            f"Cannot admit {content_id}: needs {needed} bytes, {available} reclaimable"
        )


class ProtocolFailure(SyncError):
    """Malformed manifest, payload response or channel message."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class AuthFailure(SyncError):
    """Device credentials rejected by the backend."""

    pass


class NotFound(SyncError, KeyError):
    """Content item does not exist in the Local Store."""

    def __init__(self, content_id: str):
        self.content_id = content_id
        super().__init__(content_id)

    def __str__(self) -> str:
        return f"Content item not found: {self.content_id}"


class EditRejected(SyncError):
    """Backend refused a local edit because the item moved past its base version."""

    pass


class InvalidTransition(SyncError):
    """Illegal SyncTask state transition."""

    pass
