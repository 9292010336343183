"""Read-only HTTP view over the running sync session.

The router exposes the session's health, tracked items and aggregates so
dashboards can observe the engine. The only mutating route is a manual
refresh, which polls the backend and rescans the aggregates.
"""
from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, status

from ledger_sync.api.v1.dependencies import SyncSessionDep
from ledger_sync.core.errors import SyncDisabledError
from ledger_sync.core.settings import POLL_DOMAINS
from ledger_sync.models.item import ItemKind, Lifecycle
from ledger_sync.services.ledger_store import ItemFilter

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/health")
async def get_health(session: SyncSessionDep) -> dict[str, Any]:
    """Return the current channel health."""
    return session.get_health().to_dict()


@router.get("/status")
async def get_status(session: SyncSessionDep) -> dict[str, Any]:
    """Return diagnostics: configuration, counters, client circuit and metrics."""
    return session.status()


@router.get("/items")
async def list_items(
    session: SyncSessionDep,
    kind: ItemKind | None = None,
    lifecycle: Lifecycle | None = None,
    provisional: bool | None = None,
) -> list[dict[str, Any]]:
    """List tracked items oldest first.

    Args:
        session: Running sync session.
        kind: Only items of this kind.
        lifecycle: Only items in this lifecycle state.
        provisional: Only items still keyed by a local identifier (or only
            items that are not).

    Returns:
        Serialized tracked items.
    """
    item_filter = ItemFilter(kind=kind, lifecycle=lifecycle, provisional=provisional)
    return [item.to_dict() for item in session.items(item_filter)]


@router.get("/aggregates/{domain}")
async def get_aggregate(domain: str, session: SyncSessionDep) -> dict[str, Any]:
    """Return locally derived totals and the latest server-computed stats."""
    if domain not in POLL_DOMAINS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown domain {domain!r}",
        )
    remote = session.remote_stats(domain)
    return {
        "local": session.aggregate(domain).to_dict(),
        "remote": remote.to_dict() if remote is not None else None,
    }


@router.post("/refresh")
async def refresh(
    session: SyncSessionDep,
    domain: Annotated[list[str] | None, Query()] = None,
) -> dict[str, Any]:
    """Poll the requested domains (all by default) and rescan aggregates."""
    try:
        results = await session.refresh(domain)
    except SyncDisabledError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No backend configured",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"refreshed": results, "health": session.get_health().to_dict()}
