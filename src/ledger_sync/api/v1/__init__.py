"""Version 1 API endpoints."""

from .routes_sync import router as sync_router

__all__ = ["sync_router"]
