"""Merge policy and identity resolution for tracked items.

This module provides the pure :func:`merge` function and the
:class:`Reconciler` that applies fragments from the optimistic buffer and
both channels to the ledger store. It handles:

- Identity resolution (chain reference, id, optimistic correlation)
- Forward-only lifecycle with deterministic terminal tie-breaks
- Field-level last-writer-wins with channel priority on ties
- Retry counting per reconciliation cycle and stuck-item escalation
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Any

from ledger_sync.core.settings import DOMAIN_TRANSACTIONS, SyncConfig
from ledger_sync.core.time import Clock, utcnow
from ledger_sync.models.events import (
    CycleEnvelope,
    Envelope,
    ItemChange,
    ItemEnvelope,
    StatsEnvelope,
)
from ledger_sync.models.item import (
    MERGEABLE_FIELDS,
    Fragment,
    Lifecycle,
    Origin,
    Stamp,
    TrackedItem,
)
from ledger_sync.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

STUCK_REASON = "no terminal status after {count} reconciliation cycles"

# Preferred terminal outcome depending on whether a chain reference backs it
_BACKED_TERMINAL_ORDER = {
    Lifecycle.CANCELLED: 0,
    Lifecycle.FAILED: 1,
    Lifecycle.CONFIRMED: 2,
}
_UNBACKED_TERMINAL_ORDER = {
    Lifecycle.CONFIRMED: 0,
    Lifecycle.CANCELLED: 1,
    Lifecycle.FAILED: 2,
}


def _lifecycle_key(lifecycle: Lifecycle, backed: bool) -> tuple[int, int, int]:
    if not lifecycle.is_terminal:
        return (lifecycle.rank, 0, 0)
    order = _BACKED_TERMINAL_ORDER if backed else _UNBACKED_TERMINAL_ORDER
    return (lifecycle.rank, int(backed), order[lifecycle])


def _value_key(value: Any) -> str:
    return "" if value is None else str(value)


def _merge_lifecycle(current: TrackedItem, fragment: Fragment) -> tuple[Lifecycle, bool]:
    incoming = fragment.effective_lifecycle
    current_key = _lifecycle_key(current.lifecycle, current.lifecycle_backed)
    incoming_key = _lifecycle_key(incoming, fragment.backed)
    if incoming_key > current_key:
        return incoming, fragment.backed
    if incoming_key == current_key and incoming is current.lifecycle:
        return current.lifecycle, current.lifecycle_backed or fragment.backed
    return current.lifecycle, current.lifecycle_backed


def item_from_fragment(fragment: Fragment) -> TrackedItem:
    """Build a new tracked item from the first fragment seen for it."""
    stamps: dict[str, Stamp] = {
        name: fragment.stamp
        for name in MERGEABLE_FIELDS
        if getattr(fragment, name) is not None
    }
    return TrackedItem(
        id=fragment.id,
        kind=fragment.kind,
        lifecycle=fragment.effective_lifecycle,
        amount=fragment.amount,
        created_at=fragment.first_seen_at,
        updated_at=fragment.updated_at,
        origin=fragment.origin,
        confirmed_at=fragment.confirmed_at,
        source_ref=fragment.source_ref,
        reason=fragment.reason,
        confirmations=fragment.confirmations or 0,
        provisional=fragment.origin is Origin.OPTIMISTIC,
        lifecycle_backed=fragment.backed,
        stamps=stamps,
    )


def merge(current: TrackedItem | None, fragment: Fragment) -> TrackedItem:
    """Merge one fragment into the current value of an item.

    The result depends only on ``(current, fragment)``. Merging the same
    fragment twice is a no-op, and merging two fragments yields the same
    value in either order. ``id``, ``provisional`` and ``retry_count`` are
    left to the caller.
    """
    if current is None:
        return item_from_fragment(fragment)

    stamps = dict(current.stamps)
    changes: dict[str, Any] = {}
    for name in MERGEABLE_FIELDS:
        incoming = getattr(fragment, name)
        if incoming is None:
            continue
        existing_stamp = stamps.get(name)
        if existing_stamp is not None:
            existing = (existing_stamp, _value_key(getattr(current, name)))
            if (fragment.stamp, _value_key(incoming)) <= existing:
                continue
        stamps[name] = fragment.stamp
        changes[name] = incoming

    lifecycle, backed = _merge_lifecycle(current, fragment)

    if fragment.stamp > (current.updated_at, current.origin.priority):
        origin = fragment.origin
    else:
        origin = current.origin

    return current.with_changes(
        **changes,
        lifecycle=lifecycle,
        lifecycle_backed=backed,
        created_at=min(current.created_at, fragment.first_seen_at),
        updated_at=max(current.updated_at, fragment.updated_at),
        origin=origin,
        stamps=stamps,
    )


class Reconciler:
    """Single serialization point for every ledger store mutation."""

    def __init__(
        self,
        store: LedgerStore,
        config: SyncConfig,
        *,
        clock: Clock = utcnow,
        on_stats: Callable[[Any], None] | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: Ledger store owned by the session.
            config: Session configuration (correlation window, retry ceiling).
            clock: Source of the current time.
            on_stats: Receiver for server-computed aggregate snapshots.
        """
        self.store = store
        self.config = config
        self._clock = clock
        self._on_stats = on_stats
        self._cycle = 0

    @property
    def cycle(self) -> int:
        return self._cycle

    # --- Identity resolution ---------------------------------------------------

    def _correlate(self, fragment: Fragment) -> TrackedItem | None:
        window = timedelta(milliseconds=self.config.correlation_window_ms)
        seen_at = fragment.first_seen_at
        candidates = [
            item
            for item in self.store
            if item.lifecycle is Lifecycle.OPTIMISTIC
            and item.source_ref is None
            and item.kind is fragment.kind
            and item.amount == fragment.amount
            and abs(item.created_at - seen_at) <= window
        ]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda item: (abs(item.created_at - seen_at), item.created_at, item.id),
        )

    def _resolve(self, fragment: Fragment) -> TrackedItem | None:
        if fragment.source_ref:
            existing = self.store.find_by_source_ref(fragment.source_ref)
            if existing is not None:
                return existing
        existing = self.store.get(self.store.resolve(fragment.id))
        if existing is not None:
            return existing
        if fragment.origin.is_authoritative:
            return self._correlate(fragment)
        return None

    # --- Application -----------------------------------------------------------

    def apply(self, fragment: Fragment) -> ItemChange | None:
        """Merge a fragment into the store and return the observable change."""
        current = self._resolve(fragment)
        merged = merge(current, fragment)
        replaces: str | None = None

        if current is not None:
            if (
                current.lifecycle.is_terminal
                and fragment.lifecycle is not None
                and fragment.lifecycle.is_terminal
                and fragment.lifecycle is not current.lifecycle
            ):
                logger.warning(
                    "Conflicting terminal states for %s: stored %s (backed=%s), "
                    "%s reports %s (backed=%s); keeping %s",
                    current.id,
                    current.lifecycle.value,
                    current.lifecycle_backed,
                    fragment.origin.value,
                    fragment.lifecycle.value,
                    fragment.backed,
                    merged.lifecycle.value,
                )
            elif (
                fragment.lifecycle is not None
                and fragment.lifecycle.rank < current.lifecycle.rank
            ):
                logger.debug(
                    "Ignoring %s lifecycle %s for %s already %s",
                    fragment.origin.value,
                    fragment.lifecycle.value,
                    current.id,
                    current.lifecycle.value,
                )

            if current.provisional and fragment.origin.is_authoritative:
                merged = merged.with_changes(id=fragment.id, provisional=False)
                if fragment.id != current.id:
                    replaces = current.id
                    logger.info(
                        "Unified optimistic item %s with %s (sourceRef=%s)",
                        current.id,
                        fragment.id,
                        merged.source_ref,
                    )

        return self.store.upsert(merged, replaces=replaces)

    def apply_many(self, fragments: Iterable[Fragment]) -> list[ItemChange]:
        changes = []
        for fragment in fragments:
            change = self.apply(fragment)
            if change is not None:
                changes.append(change)
        return changes

    def observe_cycle(self, cycle: int | None = None) -> list[ItemChange]:
        """Count one reconciliation cycle against every non-terminal item.

        Items whose ``retry_count`` exceeds the configured ceiling are marked
        ``failed`` with a synthetic reason. Replaying an already observed
        cycle number is a no-op.
        """
        cycle = self._cycle + 1 if cycle is None else cycle
        if cycle <= self._cycle:
            return []
        self._cycle = cycle

        changes: list[ItemChange] = []
        now = self._clock()
        for item in self.store.list():
            if item.lifecycle.is_terminal:
                continue
            retry_count = item.retry_count + 1
            if retry_count <= self.config.retry_ceiling:
                self.store.upsert(item.with_changes(retry_count=retry_count))
                continue
            reason = STUCK_REASON.format(count=retry_count)
            failed = item.with_changes(
                retry_count=retry_count,
                lifecycle=Lifecycle.FAILED,
                lifecycle_backed=False,
                reason=reason,
                updated_at=max(item.updated_at, now),
                stamps={**item.stamps, "reason": (max(item.updated_at, now), -1)},
            )
            logger.warning("Escalating stuck item %s to failed: %s", item.id, reason)
            change = self.store.upsert(failed)
            if change is not None:
                changes.append(change)
        return changes

    def dispatch(self, envelope: Envelope) -> None:
        """Apply one queued envelope."""
        if isinstance(envelope, ItemEnvelope):
            self.apply(envelope.fragment)
        elif isinstance(envelope, StatsEnvelope):
            if self._on_stats is not None:
                self._on_stats(envelope.stats)
        elif isinstance(envelope, CycleEnvelope):
            if envelope.domain == DOMAIN_TRANSACTIONS:
                self.observe_cycle()
        else:  # pragma: no cover - exhaustive over Envelope
            raise TypeError(f"unknown envelope {envelope!r}")

    async def run(self, queue: asyncio.Queue[Envelope]) -> None:
        """Consume envelopes in arrival order until cancelled."""
        while True:
            envelope = await queue.get()
            try:
                self.dispatch(envelope)
            except Exception as e:
                logger.error("Reconciler failed to apply %r: %s", envelope, e, exc_info=True)
            finally:
                queue.task_done()
