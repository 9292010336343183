"""Shared API dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from ledger_sync.services.session import SyncSession


def get_sync_session(request: Request) -> SyncSession:
    """Return the process-wide sync session owned by the application.

    Raises:
        HTTPException: If the application has no session attached yet.
    """
    session: SyncSession | None = getattr(request.app.state, "sync_session", None)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync session is not running",
        )
    return session


# Type alias for sync session dependency
SyncSessionDep = Annotated[SyncSession, Depends(get_sync_session)]
