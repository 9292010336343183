"""Exception taxonomy for the sync engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base exception raised for sync-related failures."""


class ChannelError(SyncError):
    """Raised for transient push or poll transport failures.

    Channel errors are retried by the adapters and never surface to callers
    as fatal conditions.
    """


class SyncDisabledError(SyncError):
    """Raised when channel operations are attempted without a backend URL."""


class MalformedFragmentError(SyncError, ValueError):
    """Raised when a wire payload cannot be turned into a fragment.

    The adapters and the reconciler drop such payloads and log them.
    """


class ActionRejectedError(SyncError):
    """Raised by a caller-supplied network action that was rejected outright."""
