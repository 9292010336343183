"""Incremental aggregate counters over the ledger store."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime
from decimal import Decimal

from ledger_sync.core.settings import DOMAIN_STAKING, DOMAIN_TRANSACTIONS
from ledger_sync.models.aggregate import AggregateSnapshot, RemoteStats
from ledger_sync.models.events import ItemChange
from ledger_sync.models.item import Lifecycle, TrackedItem

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
_PENDING_LIFECYCLES = (Lifecycle.OPTIMISTIC, Lifecycle.PENDING)


def item_domains(item: TrackedItem) -> tuple[str, ...]:
    """Return the aggregate domains an item contributes to."""
    if item.kind.affects_staking:
        return (DOMAIN_TRANSACTIONS, DOMAIN_STAKING)
    return (DOMAIN_TRANSACTIONS,)


class _Totals:
    """Mutable running totals for one domain."""

    def __init__(self) -> None:
        self.count = 0
        self.counts_by_lifecycle: Counter[str] = Counter()
        self.counts_by_kind: Counter[str] = Counter()
        self.sums_by_kind: dict[str, Decimal] = {}
        self.sums_by_lifecycle: dict[str, Decimal] = {}
        self.pending_sum = ZERO
        self.confirmed_sum = ZERO

    @staticmethod
    def _bump(bucket: dict[str, Decimal], key: str, amount: Decimal) -> None:
        value = bucket.get(key, ZERO) + amount
        if value == ZERO:
            bucket.pop(key, None)
        else:
            bucket[key] = value

    @staticmethod
    def _count(counter: Counter[str], key: str, sign: int) -> None:
        counter[key] += sign
        if counter[key] == 0:
            del counter[key]

    def apply(self, item: TrackedItem, sign: int) -> None:
        amount = item.amount if sign > 0 else -item.amount
        self.count += sign
        self._count(self.counts_by_lifecycle, item.lifecycle.value, sign)
        self._count(self.counts_by_kind, item.kind.value, sign)
        self._bump(self.sums_by_kind, item.kind.value, amount)
        self._bump(self.sums_by_lifecycle, item.lifecycle.value, amount)
        if item.lifecycle in _PENDING_LIFECYCLES:
            self.pending_sum += amount
        elif item.lifecycle is Lifecycle.CONFIRMED:
            self.confirmed_sum += amount

    def snapshot(self, domain: str) -> AggregateSnapshot:
        return AggregateSnapshot(
            domain=domain,
            count=self.count,
            counts_by_lifecycle=dict(self.counts_by_lifecycle),
            counts_by_kind=dict(self.counts_by_kind),
            sums_by_kind=dict(self.sums_by_kind),
            sums_by_lifecycle=dict(self.sums_by_lifecycle),
            pending_sum=self.pending_sum,
            confirmed_sum=self.confirmed_sum,
        )


SnapshotListener = Callable[[AggregateSnapshot], None]
StatsListener = Callable[[RemoteStats], None]


class Aggregator:
    """Maintains per-domain totals from ledger store deltas.

    Each change costs O(1): the pre-merge contribution is subtracted and the
    post-merge contribution added. :meth:`rebuild` rescans the whole store and
    is only used on cold start or an explicit refresh.
    """

    def __init__(self) -> None:
        self._totals: dict[str, _Totals] = {
            DOMAIN_TRANSACTIONS: _Totals(),
            DOMAIN_STAKING: _Totals(),
        }
        self._remote: dict[str, RemoteStats] = {}
        self._stats_stamps: dict[str, dict[str, tuple[datetime, int]]] = {}
        self._snapshot_listeners: list[SnapshotListener] = []
        self._stats_listeners: list[StatsListener] = []

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    def add_stats_listener(self, listener: StatsListener) -> None:
        self._stats_listeners.append(listener)

    def on_change(self, change: ItemChange) -> None:
        """Apply one ledger store delta."""
        touched: set[str] = set()
        if change.previous is not None:
            for domain in item_domains(change.previous):
                self._totals[domain].apply(change.previous, -1)
                touched.add(domain)
        if change.current is not None:
            for domain in item_domains(change.current):
                self._totals[domain].apply(change.current, +1)
                touched.add(domain)
        for domain in sorted(touched):
            self._emit(domain)

    def rebuild(self, items: Iterable[TrackedItem]) -> None:
        """Recompute every domain from scratch."""
        fresh = {domain: _Totals() for domain in self._totals}
        for item in items:
            for domain in item_domains(item):
                fresh[domain].apply(item, +1)

        for domain, totals in fresh.items():
            if totals.snapshot(domain) != self._totals[domain].snapshot(domain):
                logger.warning("Aggregate rescan corrected drift in %s totals", domain)
            self._totals[domain] = totals
        for domain in sorted(fresh):
            self._emit(domain)

    def snapshot(self, domain: str) -> AggregateSnapshot:
        totals = self._totals.get(domain)
        if totals is None:
            return AggregateSnapshot(domain=domain)
        return totals.snapshot(domain)

    def domains(self) -> list[str]:
        return sorted(self._totals)

    def apply_remote(self, stats: RemoteStats) -> bool:
        """Merge a server-computed snapshot key by key; returns True when observers were told.

        Push events carry partial updates, so each key keeps its own
        ``(updated_at, origin priority)`` stamp and only a newer stamp replaces it.
        """
        current = self._remote.get(stats.domain)
        held = dict(current.values) if current is not None else {}
        stamps = self._stats_stamps.setdefault(stats.domain, {})
        merged = dict(held)
        accepted = False
        for key, value in stats.values.items():
            stamp = stamps.get(key)
            if stamp is not None and (stats.stamp, str(value)) <= (stamp, str(held.get(key))):
                continue
            merged[key] = value
            stamps[key] = stats.stamp
            accepted = True

        if current is not None and not accepted:
            logger.debug("Ignoring older %s stats from %s", stats.domain, stats.origin.value)
            return False

        latest = stats if current is None or stats.stamp >= current.stamp else current
        snapshot = RemoteStats(
            domain=stats.domain,
            values=merged,
            updated_at=latest.updated_at,
            origin=latest.origin,
        )
        self._remote[stats.domain] = snapshot
        if current is not None and merged == held:
            return False
        for listener in list(self._stats_listeners):
            listener(snapshot)
        return True

    def remote(self, domain: str) -> RemoteStats | None:
        return self._remote.get(domain)

    def reset(self) -> None:
        for domain in self._totals:
            self._totals[domain] = _Totals()
        self._remote.clear()
        self._stats_stamps.clear()

    def _emit(self, domain: str) -> None:
        if not self._snapshot_listeners:
            return
        snapshot = self.snapshot(domain)
        for listener in list(self._snapshot_listeners):
            listener(snapshot)
