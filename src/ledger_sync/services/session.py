"""Session-scoped owner of every sync component.

A :class:`SyncSession` wires the ledger store, reconciler, aggregator,
health monitor and both channel adapters together and owns their tasks.
It handles:

- Startup and teardown of the reconciler, health, poll and push tasks
- Fan-out of item, aggregate, stats and health changes to observers
- Manual refresh followed by an aggregate rescan
- Optimistic writes through :class:`OptimisticWriteBuffer`
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from decimal import Decimal
from types import TracebackType
from typing import Any

import httpx

from ledger_sync.core.settings import (
    DOMAIN_STAKING,
    DOMAIN_TRANSACTIONS,
    POLL_DOMAINS,
    SyncConfig,
    load_sync_config,
)
from ledger_sync.core.time import Clock, utcnow
from ledger_sync.models.aggregate import AggregateSnapshot, RemoteStats
from ledger_sync.models.events import (
    AggregateChanged,
    Envelope,
    HealthChanged,
    ItemChange,
    ItemChanged,
    ItemFailed,
    RemoteStatsChanged,
)
from ledger_sync.models.health import ChannelHealth
from ledger_sync.models.item import ItemKind, Lifecycle, TrackedItem
from ledger_sync.services.aggregator import Aggregator, item_domains
from ledger_sync.services.client import AuthHeaderProvider, SyncClient
from ledger_sync.services.health import HealthMonitor
from ledger_sync.services.ledger_store import LedgerStore
from ledger_sync.services.observers import DOMAIN_HEALTH, ObserverHub, Subscription
from ledger_sync.services.optimistic import NetworkAction, OptimisticWriteBuffer
from ledger_sync.services.poll import PollAdapter
from ledger_sync.services.push import PushAdapter
from ledger_sync.services.reconciler import Reconciler

logger = logging.getLogger(__name__)


def _newly_failed(change: ItemChange) -> TrackedItem | None:
    """Return the item if this change moved it into ``failed``."""
    current, previous = change.current, change.previous
    if current is None or current.lifecycle is not Lifecycle.FAILED:
        return None
    if previous is not None and previous.lifecycle is Lifecycle.FAILED:
        return None
    return current


class SyncSession:
    """Owns one client-side view of the ledger for its lifetime."""

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        client: SyncClient | None = None,
        clock: Clock = utcnow,
        auth_headers: AuthHeaderProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Build every component of the session without starting any task.

        Args:
            config: Session configuration; loaded from the environment if None.
            client: Optional pre-built HTTP client.
            clock: Source of the current time.
            auth_headers: Returns the session-token headers for each request.
            transport: Optional httpx transport, mainly for tests.
        """
        self.config = config or load_sync_config()
        self._clock = clock
        self.client = client or SyncClient(
            self.config, auth_headers=auth_headers, transport=transport
        )
        self.queue: asyncio.Queue[Envelope] = asyncio.Queue()
        self.store = LedgerStore()
        self.aggregator = Aggregator()
        self.observers = ObserverHub()
        self.health = HealthMonitor(self.config, clock=clock)
        self.reconciler = Reconciler(
            self.store, self.config, clock=clock, on_stats=self.aggregator.apply_remote
        )
        self.writes = OptimisticWriteBuffer(self.reconciler, self.config, clock=clock)
        self.poll = PollAdapter(self.client, self.queue, self.health, self.config, clock=clock)
        self.push = PushAdapter(
            self.client,
            self.queue,
            self.health,
            self.config,
            on_reconnect=self.poll.request_refresh,
            clock=clock,
        )
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._started = False

        self.store.subscribe(self._on_item_change)
        self.aggregator.add_snapshot_listener(self._on_aggregate)
        self.aggregator.add_stats_listener(self._on_remote_stats)
        self.health.add_listener(self._on_health)

    @property
    def started(self) -> bool:
        return self._started

    # --- Lifecycle -----------------------------------------------------------------

    async def start(self) -> None:
        """Start the reconciler, health, poll and (if enabled) push tasks."""
        if self._started:
            return

        self._started = True
        self._stopping.clear()
        logger.info(
            "Starting sync session (backend=%s, push=%s)",
            self.config.base_url or "<none>",
            self.config.push_enabled,
        )
        self._tasks = [
            asyncio.create_task(self.reconciler.run(self.queue), name="ledger-sync-reconciler"),
            asyncio.create_task(self.health.run(self._stopping), name="ledger-sync-health"),
        ]
        await self.poll.start()
        if self.config.push_enabled:
            await self.push.start()

    async def stop(self) -> None:
        """Cancel every task and timer, then flush the session state."""
        if not self._started:
            return

        self._stopping.set()
        await self.push.stop()
        await self.poll.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.writes.close()
        await self.client.close()

        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        self.store.clear()
        self.aggregator.reset()
        self.observers.close()
        self._started = False
        logger.info("Sync session stopped")

    async def __aenter__(self) -> SyncSession:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # --- Observer wiring -------------------------------------------------------------

    def _on_item_change(self, change: ItemChange) -> None:
        # totals update before any observer sees the change
        self.aggregator.on_change(change)

        domains: set[str] = set()
        for item in (change.previous, change.current):
            if item is not None:
                domains.update(item_domains(item))
        for domain in sorted(domains):
            self.observers.publish(domain, ItemChanged(domain, change))

        failed = _newly_failed(change)
        if failed is not None:
            logger.info("Item %s failed: %s", failed.id, failed.reason)
            for domain in item_domains(failed):
                self.observers.publish(domain, ItemFailed(domain, failed))

    def _on_aggregate(self, snapshot: AggregateSnapshot) -> None:
        self.observers.publish(snapshot.domain, AggregateChanged(snapshot.domain, snapshot))

    def _on_remote_stats(self, stats: RemoteStats) -> None:
        self.observers.publish(stats.domain, RemoteStatsChanged(stats.domain, stats))

    def _on_health(self, previous: ChannelHealth, current: ChannelHealth) -> None:
        self.poll.on_health_change(previous, current)
        self.observers.publish(DOMAIN_HEALTH, HealthChanged(DOMAIN_HEALTH, previous, current))

    # --- Caller API --------------------------------------------------------------------

    def subscribe(self, domain: str) -> Subscription:
        return self.observers.subscribe(domain)

    def add_listener(self, domain: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        return self.observers.add_listener(domain, callback)

    def get_health(self) -> ChannelHealth:
        return self.health.current()

    def items(self, filter: Callable[[TrackedItem], bool] | None = None) -> list[TrackedItem]:
        return self.store.list(filter)

    def aggregate(self, domain: str) -> AggregateSnapshot:
        return self.aggregator.snapshot(domain)

    def remote_stats(self, domain: str) -> RemoteStats | None:
        return self.aggregator.remote(domain)

    def rebuild_aggregates(self) -> None:
        """Rescan the store and replace the incremental totals."""
        self.aggregator.rebuild(self.store)

    async def refresh(self, domains: Iterable[str] | None = None) -> dict[str, bool]:
        """Poll the given domains now, apply the results and rescan aggregates.

        Returns:
            Mapping of domain to whether its poll succeeded.

        Raises:
            SyncDisabledError: If no backend is configured.
        """
        selected = tuple(domains) if domains is not None else POLL_DOMAINS
        unknown = [domain for domain in selected if domain not in POLL_DOMAINS]
        if unknown:
            raise ValueError(f"unknown poll domains: {unknown}")

        results: dict[str, bool] = {}
        for domain in selected:
            results[domain] = await self.poll.poll_once(domain)
        await self._drain_queue()
        self.rebuild_aggregates()
        logger.info("Manual refresh of %s: %s", ", ".join(selected), results)
        return results

    async def _drain_queue(self) -> None:
        if self._started:
            await self.queue.join()
            return
        while not self.queue.empty():
            envelope = self.queue.get_nowait()
            try:
                self.reconciler.dispatch(envelope)
            finally:
                self.queue.task_done()

    async def submit(
        self,
        kind: ItemKind | str,
        amount: Decimal | str | int,
        action: NetworkAction,
        *,
        request_key: str | None = None,
    ) -> TrackedItem | None:
        """Record an optimistic write and run its network action."""
        return await self.writes.submit(kind, amount, action, request_key=request_key)

    def status(self) -> dict[str, Any]:
        """Return a diagnostic snapshot of the session."""
        return {
            "started": self._started,
            "config": self.config.as_public_dict(),
            "health": self.health.current().to_dict(),
            "items": len(self.store),
            "pending_writes": len(self.writes.pending()),
            "reconciliation_cycle": self.reconciler.cycle,
            "queue_size": self.queue.qsize(),
            "dropped": {"poll": self.poll.dropped, "push": self.push.dropped},
            "push": {"connected": self.push.connected, "reconnects": self.push.reconnects},
            "aggregates": {
                domain: self.aggregator.snapshot(domain).to_dict()
                for domain in (DOMAIN_TRANSACTIONS, DOMAIN_STAKING)
            },
            "client": self.client.get_status(),
        }
