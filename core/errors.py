"""Error kinds raised by the backup and synchronisation subsystem."""
from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for every failure surfaced by the sync engine."""


class SyncConfigurationError(SyncError):
    """Raised when Google Drive backup has not been configured."""


class AuthRequired(SyncError):
    """Raised when no usable credential exists and the user must sign in."""


class AuthExpired(SyncError):
    """Raised when Drive rejects the access token (HTTP 401)."""


class NetworkFailure(SyncError):
    """Raised when a Drive request fails for transport or server reasons."""


class FormatError(SyncError, ValueError):
    """Raised when snapshot content does not match the backup schema."""


class NotFound(SyncError):
    """Raised when a requested remote file or local record is absent."""


__all__ = [
    "SyncError",
    "SyncConfigurationError",
    "AuthRequired",
    "AuthExpired",
    "NetworkFailure",
    "FormatError",
    "NotFound",
]
