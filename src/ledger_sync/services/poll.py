"""Periodic snapshot polling, one independent timer per domain."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from ledger_sync.core.errors import ChannelError, MalformedFragmentError, SyncDisabledError
from ledger_sync.core.settings import DOMAIN_TRANSACTIONS, POLL_DOMAINS, SyncConfig
from ledger_sync.core.time import Clock, utcnow
from ledger_sync.models.events import CycleEnvelope, Envelope, ItemEnvelope, StatsEnvelope
from ledger_sync.models.health import ChannelHealth, HealthStatus
from ledger_sync.models.item import Origin
from ledger_sync.schemas.fragment import (
    extract_items,
    extract_stats,
    parse_item_fragment,
    parse_remote_stats,
)
from ledger_sync.services.client import SyncClient
from ledger_sync.services.health import HealthMonitor

logger = logging.getLogger(__name__)


class PollAdapter:
    """Polls each domain on its own cadence and enqueues typed fragments.

    A failed or timed-out poll is logged and counted by the health monitor;
    the timer keeps running and previously reconciled state is untouched.
    """

    def __init__(
        self,
        client: SyncClient,
        queue: asyncio.Queue[Envelope],
        health: HealthMonitor,
        config: SyncConfig,
        *,
        clock: Clock = utcnow,
        domains: Iterable[str] = POLL_DOMAINS,
    ) -> None:
        self.client = client
        self.queue = queue
        self.health = health
        self.config = config
        self._clock = clock
        self.domains = tuple(domains)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._wake: dict[str, asyncio.Event] = {domain: asyncio.Event() for domain in self.domains}
        self._stopping = asyncio.Event()
        self.dropped = 0

    def interval(self, domain: str) -> float:
        """Current cadence for a domain, tightened while the push channel is down."""
        base = self.config.poll_intervals.for_domain(domain)
        return max(0.05, base * self.health.poll_factor())

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def start(self) -> None:
        """Start one polling task per domain."""
        self._stopping.clear()
        for domain in self.domains:
            task = self._tasks.get(domain)
            if task is None or task.done():
                self._tasks[domain] = asyncio.create_task(
                    self._run(domain), name=f"ledger-sync-poll-{domain}"
                )

    async def stop(self) -> None:
        """Cancel every polling task and wait for them to finish."""
        self._stopping.set()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def request_refresh(self, domains: Iterable[str] | None = None) -> None:
        """Wake the given domain timers so they poll immediately."""
        for domain in domains or self.domains:
            wake = self._wake.get(domain)
            if wake is not None:
                wake.set()

    def on_health_change(self, previous: ChannelHealth, current: ChannelHealth) -> None:
        # poll right away at the tightened cadence
        if previous.status is HealthStatus.LIVE and current.status is not HealthStatus.LIVE:
            self.request_refresh()

    async def poll_once(self, domain: str) -> bool:
        """Fetch one snapshot for ``domain`` and enqueue its fragments.

        Returns:
            True if the poll succeeded.

        Raises:
            SyncDisabledError: If no backend is configured.
        """
        try:
            body = await asyncio.wait_for(
                self.client.fetch_snapshot(domain),
                timeout=self.config.poll_timeout_seconds,
            )
            received_at = self._clock()
            if domain == DOMAIN_TRANSACTIONS:
                payloads = extract_items(body)
            else:
                stats = parse_remote_stats(domain, extract_stats(body), Origin.POLL, received_at)
        except TimeoutError:
            logger.warning(
                "Poll of %s timed out after %.1fs", domain, self.config.poll_timeout_seconds
            )
            self.health.record_poll_failure(domain)
            return False
        except (ChannelError, MalformedFragmentError, OSError) as e:
            logger.warning("Poll of %s failed: %s", domain, e)
            self.health.record_poll_failure(domain)
            return False

        if domain == DOMAIN_TRANSACTIONS:
            for payload in payloads:
                try:
                    fragment = parse_item_fragment(payload, Origin.POLL, received_at)
                except MalformedFragmentError as e:
                    self.dropped += 1
                    logger.warning("Dropping malformed %s fragment: %s", domain, e)
                    continue
                self.queue.put_nowait(ItemEnvelope(fragment))
            self.queue.put_nowait(CycleEnvelope(domain))
            logger.debug("Polled %d %s fragments", len(payloads), domain)
        else:
            self.queue.put_nowait(StatsEnvelope(stats))

        self.health.record_poll_success(domain)
        return True

    async def _run(self, domain: str) -> None:
        while not self._stopping.is_set():
            try:
                await self.poll_once(domain)
            except SyncDisabledError:
                logger.info("Polling disabled for %s: no backend configured", domain)
                return
            except (ValueError, TypeError, KeyError) as e:
                logger.error("Poll of %s hit a data processing error: %s", domain, e, exc_info=True)
            await self._sleep(domain, self.interval(domain))

    async def _sleep(self, domain: str, seconds: float) -> None:
        wake = self._wake[domain]
        try:
            await asyncio.wait_for(wake.wait(), timeout=seconds)
        except TimeoutError:
            pass
        wake.clear()
