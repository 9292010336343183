"""Optimistic local writes awaiting authoritative confirmation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from ledger_sync.core.errors import ActionRejectedError, SyncError
from ledger_sync.core.settings import SyncConfig
from ledger_sync.core.time import Clock, utcnow
from ledger_sync.models.item import Fragment, ItemKind, Lifecycle, Origin, TrackedItem
from ledger_sync.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

NetworkAction = Callable[[], Awaitable[Any]]

_SOURCE_REF_KEYS = ("sourceRef", "source_ref", "txHash")


def _new_local_id() -> str:
    return f"local-{uuid.uuid4().hex}"


def _source_ref_from(result: Any) -> str | None:
    if isinstance(result, str):
        return result or None
    if isinstance(result, Mapping):
        for key in _SOURCE_REF_KEYS:
            value = result.get(key)
            if value:
                return str(value)
    return None


@dataclass
class PendingWrite:
    """A local action recorded before the backend has acknowledged it."""

    local_id: str
    kind: ItemKind
    amount: Decimal
    created_at: datetime
    request_key: str | None = None
    source_ref: str | None = None


class OptimisticWriteBuffer:
    """Records user actions as ``optimistic`` items for instant feedback.

    Items enter the store through the reconciler like any other fragment.
    When the network action is rejected the item turns ``failed`` and stays
    visible for ``failed_grace_seconds`` before it is evicted.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        config: SyncConfig,
        *,
        clock: Clock = utcnow,
        id_factory: Callable[[], str] = _new_local_id,
    ) -> None:
        self.reconciler = reconciler
        self.store = reconciler.store
        self.config = config
        self._clock = clock
        self._id_factory = id_factory
        self._writes: dict[str, PendingWrite] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    def _current(self, local_id: str) -> TrackedItem | None:
        return self.store.get(self.store.resolve(local_id))

    def record(
        self, kind: ItemKind | str, amount: Decimal | str | int, request_key: str | None = None
    ) -> TrackedItem:
        """Insert an ``optimistic`` item for a local action and return it.

        Raises:
            ValueError: If ``kind`` or ``amount`` is invalid.
            SyncError: If the store did not keep the new item.
        """
        now = self._clock()
        local_id = self._id_factory()
        fragment = Fragment(
            id=local_id,
            kind=ItemKind(kind),
            amount=amount,
            origin=Origin.OPTIMISTIC,
            updated_at=now,
            lifecycle=Lifecycle.OPTIMISTIC,
            created_at=now,
        )
        self.reconciler.apply(fragment)
        self._writes[local_id] = PendingWrite(
            local_id=local_id,
            kind=fragment.kind,
            amount=fragment.amount,
            created_at=now,
            request_key=request_key,
        )
        logger.debug("Recorded optimistic %s of %s as %s", fragment.kind.value, amount, local_id)
        item = self._current(local_id)
        if item is None:
            raise SyncError(f"optimistic write {local_id} was not stored")
        return item

    async def submit(
        self,
        kind: ItemKind | str,
        amount: Decimal | str | int,
        action: NetworkAction,
        *,
        request_key: str | None = None,
    ) -> TrackedItem | None:
        """Record an optimistic item, run ``action`` and settle the outcome.

        A result carrying a chain reference (a string, or a mapping with
        ``sourceRef``/``txHash``) acknowledges the write. Rejections and
        transport errors mark the item ``failed``.
        """
        item = self.record(kind, amount, request_key)
        local_id = item.id
        try:
            result = await action()
        except ActionRejectedError as e:
            return self.reject(local_id, str(e) or "rejected")
        except (SyncError, httpx.HTTPError) as e:
            return self.reject(local_id, str(e) or type(e).__name__)

        source_ref = _source_ref_from(result)
        if source_ref is not None:
            return self.acknowledge(local_id, source_ref)
        return self._current(local_id)

    def acknowledge(self, local_id: str, source_ref: str) -> TrackedItem | None:
        """Attach the chain reference returned by the backend."""
        write = self._writes.get(local_id)
        if write is not None:
            write.source_ref = source_ref
        current = self._current(local_id)
        if current is None:
            logger.debug("Acknowledged write %s is no longer tracked", local_id)
            return None
        if not current.provisional:
            return current

        fragment = Fragment(
            id=current.id,
            kind=current.kind,
            amount=current.amount,
            origin=Origin.OPTIMISTIC,
            updated_at=max(self._clock(), current.updated_at),
            lifecycle=Lifecycle.PENDING,
            created_at=current.created_at,
            source_ref=source_ref,
        )
        self.reconciler.apply(fragment)
        return self._current(local_id)

    def reject(self, local_id: str, reason: str) -> TrackedItem | None:
        """Mark a write ``failed`` and schedule its eviction."""
        current = self._current(local_id)
        if current is None:
            return None
        if current.lifecycle.is_terminal:
            logger.debug("Not rejecting %s: already %s", current.id, current.lifecycle.value)
            return current

        fragment = Fragment(
            id=current.id,
            kind=current.kind,
            amount=current.amount,
            origin=Origin.OPTIMISTIC,
            updated_at=max(self._clock(), current.updated_at),
            lifecycle=Lifecycle.FAILED,
            created_at=current.created_at,
            reason=reason,
        )
        self.reconciler.apply(fragment)
        logger.info("Optimistic write %s rejected: %s", current.id, reason)
        self._schedule_eviction(current.id)
        return self._current(local_id)

    def _schedule_eviction(self, item_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; %s stays until evicted explicitly", item_id)
            return
        previous = self._evictions.pop(item_id, None)
        if previous is not None:
            previous.cancel()
        self._evictions[item_id] = loop.call_later(
            self.config.failed_grace_seconds, self.evict, item_id
        )

    def evict(self, local_id: str) -> bool:
        """Remove a rejected write if it is still ``failed``."""
        item_id = self.store.resolve(local_id)
        handle = self._evictions.pop(item_id, None)
        if handle is not None:
            handle.cancel()
        item = self.store.get(item_id)
        if item is None or item.lifecycle is not Lifecycle.FAILED:
            return False
        self.store.remove(item_id)
        for key in [key for key in self._writes if self.store.resolve(key) == item_id]:
            del self._writes[key]
        logger.debug("Evicted failed write %s", item_id)
        return True

    def pending(self) -> dict[str, PendingWrite]:
        """Writes whose item is still provisional and not terminal."""
        result: dict[str, PendingWrite] = {}
        for local_id, write in self._writes.items():
            item = self._current(local_id)
            if item is not None and item.provisional and not item.lifecycle.is_terminal:
                result[local_id] = write
        return result

    def close(self) -> None:
        """Cancel every eviction timer and forget recorded writes."""
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self._writes.clear()
