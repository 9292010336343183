# src/ledger_sync/models/__init__.py
"""Value types for the ledger sync engine."""

from .aggregate import AggregateSnapshot, RemoteStats
from .events import (
    AggregateChanged,
    CycleEnvelope,
    Envelope,
    HealthChanged,
    ItemChange,
    ItemChanged,
    ItemEnvelope,
    ItemFailed,
    ObserverEvent,
    RemoteStatsChanged,
    StatsEnvelope,
)
from .health import ChannelHealth, HealthStatus
from .item import Fragment, ItemKind, Lifecycle, Origin, TrackedItem

__all__ = [
    "AggregateSnapshot", "RemoteStats",
    "AggregateChanged", "CycleEnvelope", "Envelope", "HealthChanged", "ItemChange",
    "ItemChanged", "ItemEnvelope", "ItemFailed", "ObserverEvent", "RemoteStatsChanged",
    "StatsEnvelope",
    "ChannelHealth", "HealthStatus",
    "Fragment", "ItemKind", "Lifecycle", "Origin", "TrackedItem",
]
