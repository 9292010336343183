# src/ledger_sync/models/events.py
"""Typed envelopes flowing through the sync queue and to observers."""

from __future__ import annotations

from dataclasses import dataclass

from ledger_sync.models.aggregate import AggregateSnapshot, RemoteStats
from ledger_sync.models.health import ChannelHealth
from ledger_sync.models.item import Fragment, TrackedItem


@dataclass(frozen=True)
class ItemChange:
    """Pre- and post-merge values of one store mutation.

    ``previous`` is ``None`` for an insert and ``current`` is ``None`` for a
    removal. When an item adopts an authoritative identifier the two carry
    different ids.
    """

    previous: TrackedItem | None
    current: TrackedItem | None

    @property
    def item_id(self) -> str:
        if self.current is not None:
            return self.current.id
        if self.previous is not None:
            return self.previous.id
        raise ValueError("item change carries no item")


# --- Queue envelopes consumed by the reconciler -------------------------------


@dataclass(frozen=True)
class ItemEnvelope:
    fragment: Fragment


@dataclass(frozen=True)
class StatsEnvelope:
    stats: RemoteStats


@dataclass(frozen=True)
class CycleEnvelope:
    """Marks the end of one successful transactions poll."""

    domain: str


Envelope = ItemEnvelope | StatsEnvelope | CycleEnvelope


# --- Observer events -------------------------------------------------------------


@dataclass(frozen=True)
class ItemChanged:
    domain: str
    change: ItemChange


@dataclass(frozen=True)
class ItemFailed:
    """User-facing notification that an item reached ``failed``."""

    domain: str
    item: TrackedItem


@dataclass(frozen=True)
class AggregateChanged:
    domain: str
    snapshot: AggregateSnapshot


@dataclass(frozen=True)
class RemoteStatsChanged:
    domain: str
    stats: RemoteStats


@dataclass(frozen=True)
class HealthChanged:
    domain: str
    previous: ChannelHealth | None
    current: ChannelHealth


ObserverEvent = ItemChanged | ItemFailed | AggregateChanged | RemoteStatsChanged | HealthChanged
