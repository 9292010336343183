# src/ledger_sync/models/health.py
"""Connection health value types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class HealthStatus(str, Enum):
    """Derived freshness of the client view."""

    LIVE = "live"
    DEGRADED = "degraded"
    STALE = "stale"


@dataclass(frozen=True)
class ChannelHealth:
    """Snapshot of both channels as last recorded by the health monitor."""

    push_connected: bool
    last_push_event_at: datetime | None
    last_poll_success_at: datetime | None
    status: HealthStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "pushConnected": self.push_connected,
            "lastPushEventAt": (
                self.last_push_event_at.isoformat() if self.last_push_event_at else None
            ),
            "lastPollSuccessAt": (
                self.last_poll_success_at.isoformat() if self.last_poll_success_at else None
            ),
            "status": self.status.value,
        }
