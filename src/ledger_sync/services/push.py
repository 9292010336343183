"""Long-lived push subscription with reconnect and backoff.

The push channel does not replay missed events, so every reconnect after
the first connection asks the poll adapter for an immediate snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from ledger_sync.core.errors import ChannelError, MalformedFragmentError, SyncDisabledError
from ledger_sync.core.settings import DOMAIN_ADMIN, DOMAIN_STAKING, SyncConfig
from ledger_sync.core.time import Clock, utcnow
from ledger_sync.models.events import Envelope, ItemEnvelope, StatsEnvelope
from ledger_sync.models.item import Origin
from ledger_sync.schemas.fragment import parse_item_fragment, parse_remote_stats
from ledger_sync.services.client import PushEvent, SyncClient
from ledger_sync.services.health import HealthMonitor

logger = logging.getLogger(__name__)

TOPIC_TRANSACTION_CREATED = "transaction.created"
TOPIC_TRANSACTION_STATUS = "transaction.status"
TOPIC_STAKE_UPDATED = "stake.updated"
TOPIC_REWARDS_EARNED = "rewards.earned"
TOPIC_ADMIN_STATS = "admin.stats"

PUSH_TOPICS = (
    TOPIC_TRANSACTION_CREATED,
    TOPIC_TRANSACTION_STATUS,
    TOPIC_STAKE_UPDATED,
    TOPIC_REWARDS_EARNED,
    TOPIC_ADMIN_STATS,
)

_ITEM_TOPICS = frozenset({TOPIC_TRANSACTION_CREATED, TOPIC_TRANSACTION_STATUS})
_STAKING_TOPICS = frozenset({TOPIC_STAKE_UPDATED, TOPIC_REWARDS_EARNED})


def _looks_like_item(payload: Any) -> bool:
    return isinstance(payload, Mapping) and ("id" in payload or "_id" in payload)


class PushAdapter:
    """Keeps one event-stream subscription open and enqueues its fragments.

    Disconnects are retried with exponential backoff up to
    ``push_backoff_max_seconds`` and then held at that ceiling until a
    connection succeeds.
    """

    def __init__(
        self,
        client: SyncClient,
        queue: asyncio.Queue[Envelope],
        health: HealthMonitor,
        config: SyncConfig,
        *,
        on_reconnect: Callable[[], None] | None = None,
        clock: Clock = utcnow,
        topics: tuple[str, ...] = PUSH_TOPICS,
    ) -> None:
        self.client = client
        self.queue = queue
        self.health = health
        self.config = config
        self.topics = topics
        self._on_reconnect = on_reconnect
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._connected_once = False
        self.connected = False
        self.reconnects = 0
        self.dropped = 0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (zero-based)."""
        base = self.config.push_backoff_base_seconds
        ceiling = self.config.push_backoff_max_seconds
        if attempt >= 64:
            return ceiling
        return min(base * (2**attempt), ceiling)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the subscription loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name="ledger-sync-push")

    async def stop(self) -> None:
        """Cancel the subscription and any pending backoff sleep."""
        if self._task is None:
            return

        self._stopping.set()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        attempt = 0
        while not self._stopping.is_set():
            try:
                async with self.client.open_event_stream(self.topics) as events:
                    attempt = 0
                    self._mark_connected()
                    try:
                        async for event in events:
                            self.handle_event(event)
                    finally:
                        self._mark_disconnected()
                logger.warning("Push stream closed by the backend")
            except SyncDisabledError:
                logger.info("Push channel disabled: no backend configured")
                return
            except ChannelError as e:
                logger.warning("Push channel error: %s", e)
            except (OSError, ConnectionError, TimeoutError) as e:
                logger.warning("Push channel network error: %s", e)
            except (ValueError, TypeError, KeyError) as e:
                logger.error("Push channel data processing error: %s", e, exc_info=True)

            delay = self.backoff_delay(attempt)
            attempt += 1
            logger.debug("Reconnecting push channel in %.2fs (attempt %d)", delay, attempt)
            await self._sleep(delay)

    def _mark_connected(self) -> None:
        self.connected = True
        self.health.record_push_connected()
        if self._connected_once:
            self.reconnects += 1
            logger.info("Push channel reconnected; requesting a fresh snapshot")
            if self._on_reconnect is not None:
                self._on_reconnect()
        else:
            logger.info("Push channel connected to %s", self.config.push_path)
        self._connected_once = True

    def _mark_disconnected(self) -> None:
        if self.connected:
            self.connected = False
            self.health.record_push_disconnected()

    def handle_event(self, event: PushEvent) -> bool:
        """Route one event to the reconciler queue.

        Returns:
            True if the event produced a fragment or stats snapshot.
        """
        try:
            envelope = self._route(event.topic, event.payload(), self._clock())
        except MalformedFragmentError as e:
            self.dropped += 1
            logger.warning("Dropping malformed %s event: %s", event.topic, e)
            return False

        if envelope is None:
            logger.debug("Ignoring push event on unsubscribed topic %s", event.topic)
            return False

        self.queue.put_nowait(envelope)
        self.health.record_push_event()
        return True

    def _route(self, topic: str, payload: Any, received_at: datetime) -> Envelope | None:
        if topic in _ITEM_TOPICS:
            return ItemEnvelope(parse_item_fragment(payload, Origin.PUSH, received_at))
        if topic in _STAKING_TOPICS:
            # staking topics carry either a stake transaction or the account summary
            if _looks_like_item(payload):
                return ItemEnvelope(parse_item_fragment(payload, Origin.PUSH, received_at))
            stats = parse_remote_stats(DOMAIN_STAKING, payload, Origin.PUSH, received_at)
            return StatsEnvelope(stats)
        if topic == TOPIC_ADMIN_STATS:
            stats = parse_remote_stats(DOMAIN_ADMIN, payload, Origin.PUSH, received_at)
            return StatsEnvelope(stats)
        return None

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass
