"""
Error taxonomy for the Aggregate sync engine.

Fatal errors abort a run immediately. Non-fatal errors are recorded in the
run's result as per-row entries and the run carries on.
"""
from enum import Enum
from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""
    fatal = True

    def __init__(self, message: str, row_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.row_id = row_id


class NetworkError(SyncError):
    """Transient transport failure that survived every retry attempt."""


class AuthError(SyncError):
    """Credentials were rejected by the server (401/403)."""


class NotFoundError(SyncError):
    """The app, table or resource does not exist on the server (404)."""


class RequestRejectedError(SyncError):
    """The server rejected the request with a non-retryable 4xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SchemaError(SyncError):
    """The server returned a malformed schema or response, or a local CSV does not match it."""


class VersionConflictReason(str, Enum):
    STALE = "stale"
    MISSING = "missing"


class VersionConflictError(SyncError):
    """Supplied data version does not match the server's current table generation."""

    def __init__(self, message: str, reason: VersionConflictReason = VersionConflictReason.STALE,
                 supplied: Optional[str] = None, current: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.supplied = supplied
        self.current = current


class AttachmentError(SyncError):
    """A single attachment could not be transferred. Recorded, never fatal."""
    fatal = False


class LocalIOError(SyncError):
    """The local output or input path cannot be opened, read or written."""
