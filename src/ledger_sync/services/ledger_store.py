"""Client-side cache of tracked items.

The store is plain data plus mutation primitives; it performs no I/O. All
writers go through :meth:`LedgerStore.upsert`, which notifies listeners only
when an observable field actually changed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from ledger_sync.models.events import ItemChange
from ledger_sync.models.item import ItemKind, Lifecycle, Origin, TrackedItem

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ItemChange], None]


@dataclass(frozen=True)
class ItemFilter:
    """Field filter for :meth:`LedgerStore.list`; ``None`` matches anything."""

    kind: ItemKind | None = None
    lifecycle: Lifecycle | None = None
    origin: Origin | None = None
    provisional: bool | None = None
    terminal: bool | None = None

    def __call__(self, item: TrackedItem) -> bool:
        if self.kind is not None and item.kind is not self.kind:
            return False
        if self.lifecycle is not None and item.lifecycle is not self.lifecycle:
            return False
        if self.origin is not None and item.origin is not self.origin:
            return False
        if self.provisional is not None and item.provisional is not self.provisional:
            return False
        if self.terminal is not None and item.lifecycle.is_terminal is not self.terminal:
            return False
        return True


class LedgerStore:
    """Authoritative client-side cache of tracked items keyed by id."""

    def __init__(self) -> None:
        self._items: dict[str, TrackedItem] = {}
        self._by_source_ref: dict[str, str] = {}
        self._aliases: dict[str, str] = {}
        self._listeners: list[ChangeListener] = []

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __iter__(self) -> Iterator[TrackedItem]:
        return iter(list(self._items.values()))

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener and return a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def get(self, item_id: str) -> TrackedItem | None:
        return self._items.get(item_id)

    def resolve(self, item_id: str) -> str:
        """Follow identifier adoptions from a local id to the current one."""
        seen = {item_id}
        while item_id in self._aliases:
            item_id = self._aliases[item_id]
            if item_id in seen:  # pragma: no cover - aliases never form cycles
                break
            seen.add(item_id)
        return item_id

    def find_by_source_ref(self, source_ref: str) -> TrackedItem | None:
        item_id = self._by_source_ref.get(source_ref)
        return self._items.get(item_id) if item_id is not None else None

    def list(self, filter: Callable[[TrackedItem], bool] | None = None) -> list[TrackedItem]:
        """Return items oldest first, optionally filtered."""
        items = sorted(self._items.values(), key=lambda item: (item.created_at, item.id))
        if filter is None:
            return items
        return [item for item in items if filter(item)]

    def upsert(self, item: TrackedItem, *, replaces: str | None = None) -> ItemChange | None:
        """Insert or replace an item.

        Args:
            item: Post-merge value to store.
            replaces: Id of an entry that ``item`` supersedes under a new id.
                The old entry is dropped and recorded as an alias.

        Returns:
            The change delivered to listeners, or ``None`` when nothing
            observable changed.
        """
        previous_id = replaces if replaces is not None else item.id
        previous = self._items.get(previous_id)
        if previous is None and replaces is not None:
            previous = self._items.get(item.id)
            previous_id = item.id

        if previous is not None and previous == item:
            return None

        if replaces is not None and replaces != item.id and replaces in self._items:
            del self._items[replaces]
            self._aliases[replaces] = item.id
            self._unindex(previous, replaces)
        elif previous is not None:
            self._unindex(previous, previous_id)

        self._items[item.id] = item
        if item.source_ref:
            self._by_source_ref[item.source_ref] = item.id

        if previous is not None and previous.observable() == item.observable():
            logger.debug("Item %s refreshed without observable change", item.id)
            return None

        change = ItemChange(previous=previous, current=item)
        self._notify(change)
        return change

    def remove(self, item_id: str) -> ItemChange | None:
        item = self._items.pop(item_id, None)
        if item is None:
            return None
        self._unindex(item, item_id)
        change = ItemChange(previous=item, current=None)
        self._notify(change)
        return change

    def clear(self) -> None:
        """Flush every item without notifying listeners (session teardown)."""
        self._items.clear()
        self._by_source_ref.clear()
        self._aliases.clear()

    def _unindex(self, item: TrackedItem | None, item_id: str) -> None:
        if item is not None and item.source_ref:
            if self._by_source_ref.get(item.source_ref) == item_id:
                del self._by_source_ref[item.source_ref]

    def _notify(self, change: ItemChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(
                    "Store listener failed on %s: %s", change.item_id, e, exc_info=True
                )
