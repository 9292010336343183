from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from ledger_sync.core.settings import PollIntervals, SyncConfig
from ledger_sync.models.item import Fragment, ItemKind, Origin
from ledger_sync.services.aggregator import Aggregator
from ledger_sync.services.health import HealthMonitor
from ledger_sync.services.ledger_store import LedgerStore
from ledger_sync.services.reconciler import Reconciler

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0.0, *, ms: int = 0) -> datetime:
        self.now += timedelta(seconds=seconds, milliseconds=ms)
        return self.now


FragmentFactory = Callable[..., Fragment]


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def config() -> SyncConfig:
    """Fast cadences and short thresholds so timing tests stay quick."""
    return SyncConfig(
        base_url="http://backend.test",
        push_enabled=True,
        poll_intervals=PollIntervals(transactions=3.0, staking=5.0, admin=10.0),
        correlation_window_ms=30_000,
        retry_ceiling=3,
        freshness_threshold_ms=15_000,
        stale_threshold_ms=60_000,
        degraded_poll_factor=0.5,
        failed_grace_seconds=0.05,
        health_tick_seconds=0.05,
        poll_timeout_seconds=1.0,
        push_backoff_base_seconds=0.5,
        push_backoff_max_seconds=8.0,
    )


@pytest.fixture()
def store() -> LedgerStore:
    return LedgerStore()


@pytest.fixture()
def reconciler(store: LedgerStore, config: SyncConfig, clock: ManualClock) -> Reconciler:
    return Reconciler(store, config, clock=clock)


@pytest.fixture()
def aggregator(store: LedgerStore) -> Aggregator:
    aggregator = Aggregator()
    store.subscribe(aggregator.on_change)
    return aggregator


@pytest.fixture()
def health(config: SyncConfig, clock: ManualClock) -> HealthMonitor:
    return HealthMonitor(config, clock=clock)


@pytest.fixture()
def make_fragment(clock: ManualClock) -> FragmentFactory:
    """Build fragments stamped with the manual clock unless ``at`` is given."""

    def _make(
        id: str = "tx-1",
        kind: ItemKind | str = ItemKind.STAKE,
        amount: Any = "500",
        origin: Origin = Origin.POLL,
        *,
        at: datetime | None = None,
        **fields: Any,
    ) -> Fragment:
        return Fragment(
            id=id,
            kind=ItemKind(kind),
            amount=Decimal(str(amount)),
            origin=origin,
            updated_at=at or clock(),
            **fields,
        )

    return _make
