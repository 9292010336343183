"""Main entry point for the ledger sync observer API."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from ledger_sync.api.v1 import sync_router
from ledger_sync.core.settings import Settings, load_sync_config
from ledger_sync.services.session import SyncSession

settings = Settings()

# Initialize FastAPI app
app = FastAPI(
    title="Ledger Sync",
    description="Client-side ledger synchronization and reconciliation engine",
    version="0.1.0",
)

# Include API routers
app.include_router(sync_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    session = SyncSession(load_sync_config(settings))
    await session.start()
    app.state.sync_session = session


@app.on_event("shutdown")
async def on_shutdown() -> None:
    session: SyncSession | None = getattr(app.state, "sync_session", None)
    if session:
        await session.stop()
    app.state.sync_session = None


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "Ledger Sync",
        "version": "0.1.0",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.log_level)
    uvicorn.run("ledger_sync.main:app", host="127.0.0.1", port=8000)
