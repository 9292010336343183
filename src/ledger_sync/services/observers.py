"""Observer fan-out for store, aggregate and health changes.

Observers either register a synchronous callback per domain or hold a
:class:`Subscription`, an async iterator over an unbounded queue. Delivery
happens on the reconciler's task, so callbacks must not block.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ledger_sync.core.settings import POLL_DOMAINS
from ledger_sync.models.events import ObserverEvent

logger = logging.getLogger(__name__)

DOMAIN_HEALTH = "health"
OBSERVER_DOMAINS = (*POLL_DOMAINS, DOMAIN_HEALTH)

ObserverCallback = Callable[[ObserverEvent], None]


def _check_domain(domain: str) -> None:
    if domain not in OBSERVER_DOMAINS:
        raise ValueError(f"unknown observer domain {domain!r}; expected one of {OBSERVER_DOMAINS}")


class Subscription:
    """Queue-backed stream of events for one domain."""

    def __init__(self, hub: ObserverHub, domain: str) -> None:
        self.domain = domain
        self._hub = hub
        self._queue: asyncio.Queue[ObserverEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: ObserverEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def drain(self) -> list[ObserverEvent]:
        """Return every queued event without waiting."""
        events: list[ObserverEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        """Stop receiving events; iteration ends after the queued ones."""
        if self._closed:
            return
        self._closed = True
        self._hub._discard(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ObserverEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ObserverHub:
    """Routes observer events to subscriptions and callbacks by domain."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {
            domain: [] for domain in OBSERVER_DOMAINS
        }
        self._listeners: dict[str, list[ObserverCallback]] = {
            domain: [] for domain in OBSERVER_DOMAINS
        }

    def subscribe(self, domain: str) -> Subscription:
        """Open a subscription to ``domain``.

        Raises:
            ValueError: If ``domain`` is not an observer domain.
        """
        _check_domain(domain)
        subscription = Subscription(self, domain)
        self._subscriptions[domain].append(subscription)
        return subscription

    def add_listener(self, domain: str, callback: ObserverCallback) -> Callable[[], None]:
        """Register a callback and return a callable that removes it."""
        _check_domain(domain)
        self._listeners[domain].append(callback)

        def _remove() -> None:
            if callback in self._listeners[domain]:
                self._listeners[domain].remove(callback)

        return _remove

    def subscriber_count(self, domain: str) -> int:
        return len(self._subscriptions.get(domain, ())) + len(self._listeners.get(domain, ()))

    def publish(self, domain: str, event: ObserverEvent) -> None:
        for subscription in list(self._subscriptions.get(domain, ())):
            subscription.put(event)
        for callback in list(self._listeners.get(domain, ())):
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    "Observer callback for %s failed on %s: %s",
                    domain,
                    type(event).__name__,
                    e,
                    exc_info=True,
                )

    def close(self) -> None:
        """Close every subscription and drop every callback."""
        for subscriptions in self._subscriptions.values():
            for subscription in list(subscriptions):
                subscription.close()
        for listeners in self._listeners.values():
            listeners.clear()

    def _discard(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.domain, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
