# src/ledger_sync/models/aggregate.py
"""Derived and server-computed aggregate snapshots."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_sync.models.item import Origin


@dataclass(frozen=True)
class AggregateSnapshot:
    """Per-domain totals derived from the ledger store.

    Zero-valued buckets are omitted so a rescan and an incrementally
    maintained snapshot compare equal.
    """

    domain: str
    count: int = 0
    counts_by_lifecycle: Mapping[str, int] = field(default_factory=dict)
    counts_by_kind: Mapping[str, int] = field(default_factory=dict)
    sums_by_kind: Mapping[str, Decimal] = field(default_factory=dict)
    sums_by_lifecycle: Mapping[str, Decimal] = field(default_factory=dict)
    pending_sum: Decimal = Decimal("0")
    confirmed_sum: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "count": self.count,
            "countsByLifecycle": dict(self.counts_by_lifecycle),
            "countsByKind": dict(self.counts_by_kind),
            "sumsByKind": {key: str(value) for key, value in self.sums_by_kind.items()},
            "sumsByLifecycle": {
                key: str(value) for key, value in self.sums_by_lifecycle.items()
            },
            "pendingSum": str(self.pending_sum),
            "confirmedSum": str(self.confirmed_sum),
        }


@dataclass(frozen=True)
class RemoteStats:
    """Aggregate snapshot computed by the backend (staking info, admin stats)."""

    domain: str
    values: Mapping[str, Any]
    updated_at: datetime
    origin: Origin

    @property
    def stamp(self) -> tuple[datetime, int]:
        return (self.updated_at, self.origin.priority)

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "values": dict(self.values),
            "updatedAt": self.updated_at.isoformat(),
            "origin": self.origin.value,
        }
