"""Connection health state machine over push and poll signals."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from ledger_sync.core.settings import SyncConfig
from ledger_sync.core.time import Clock, utcnow
from ledger_sync.models.health import ChannelHealth, HealthStatus

logger = logging.getLogger(__name__)

HealthListener = Callable[[ChannelHealth, ChannelHealth], None]


class HealthMonitor:
    """Derives ``live``/``degraded``/``stale`` from adapter timestamps.

    - ``live``: push connected (or disabled) and a push or poll update seen
      within the freshness threshold
    - ``degraded``: otherwise, while some update is younger than the stale
      threshold
    - ``stale``: no successful update on either channel within the stale
      threshold (measured from session start before the first update)

    Transitions are evaluated on every adapter callback and on a periodic
    tick, since staleness is the absence of signals.
    """

    def __init__(self, config: SyncConfig, *, clock: Clock = utcnow) -> None:
        self.config = config
        self._clock = clock
        self._started_at = clock()
        self._push_connected = False
        self._last_push_event_at: datetime | None = None
        self._last_poll_success_at: datetime | None = None
        self._poll_failures: dict[str, int] = {}
        self._listeners: list[HealthListener] = []
        self._current = self._snapshot(self._started_at)

    def add_listener(self, listener: HealthListener) -> None:
        self._listeners.append(listener)

    def current(self) -> ChannelHealth:
        return self._current

    @property
    def status(self) -> HealthStatus:
        return self._current.status

    def poll_factor(self) -> float:
        """Multiplier applied to poll intervals; below 1 while not live."""
        if self._current.status is HealthStatus.LIVE:
            return 1.0
        return self.config.degraded_poll_factor

    def poll_failures(self, domain: str) -> int:
        """Consecutive failed polls for a domain."""
        return self._poll_failures.get(domain, 0)

    # --- Adapter callbacks -------------------------------------------------------

    def record_push_connected(self) -> ChannelHealth:
        self._push_connected = True
        return self.evaluate()

    def record_push_disconnected(self) -> ChannelHealth:
        self._push_connected = False
        return self.evaluate()

    def record_push_event(self) -> ChannelHealth:
        self._last_push_event_at = self._clock()
        return self.evaluate()

    def record_poll_success(self, domain: str) -> ChannelHealth:
        self._last_poll_success_at = self._clock()
        self._poll_failures[domain] = 0
        return self.evaluate()

    def record_poll_failure(self, domain: str) -> ChannelHealth:
        self._poll_failures[domain] = self._poll_failures.get(domain, 0) + 1
        return self.evaluate()

    # --- Evaluation --------------------------------------------------------------

    def _status(self, now: datetime) -> HealthStatus:
        signals = [t for t in (self._last_push_event_at, self._last_poll_success_at) if t]
        latest = max(signals) if signals else None
        age = now - (latest or self._started_at)

        if age > timedelta(milliseconds=self.config.stale_threshold_ms):
            return HealthStatus.STALE
        push_ok = self._push_connected or not self.config.push_enabled
        fresh = latest is not None and age <= timedelta(
            milliseconds=self.config.freshness_threshold_ms
        )
        if push_ok and fresh:
            return HealthStatus.LIVE
        return HealthStatus.DEGRADED

    def _snapshot(self, now: datetime) -> ChannelHealth:
        return ChannelHealth(
            push_connected=self._push_connected,
            last_push_event_at=self._last_push_event_at,
            last_poll_success_at=self._last_poll_success_at,
            status=self._status(now),
        )

    def evaluate(self) -> ChannelHealth:
        """Recompute health and notify listeners on a status transition."""
        previous = self._current
        current = self._snapshot(self._clock())
        self._current = current
        if current.status is not previous.status:
            if current.status is HealthStatus.STALE:
                logger.warning(
                    "Sync is stale: no successful update for over %d ms",
                    self.config.stale_threshold_ms,
                )
            else:
                logger.info(
                    "Sync health %s -> %s", previous.status.value, current.status.value
                )
            for listener in list(self._listeners):
                try:
                    listener(previous, current)
                except Exception as e:
                    logger.error("Health listener failed: %s", e, exc_info=True)
        return current

    async def run(self, stopping: asyncio.Event) -> None:
        """Re-evaluate on a fixed tick until ``stopping`` is set."""
        tick = max(0.05, float(self.config.health_tick_seconds))
        while not stopping.is_set():
            self.evaluate()
            try:
                await asyncio.wait_for(stopping.wait(), timeout=tick)
            except TimeoutError:
                continue
