"""Sync engine services: store, reconciliation, channels and the session."""

from .aggregator import Aggregator
from .health import HealthMonitor
from .ledger_store import ItemFilter, LedgerStore
from .observers import ObserverHub, Subscription
from .optimistic import OptimisticWriteBuffer
from .reconciler import Reconciler, merge
from .session import SyncSession

__all__ = [
    "Aggregator",
    "HealthMonitor",
    "ItemFilter", "LedgerStore",
    "ObserverHub", "Subscription",
    "OptimisticWriteBuffer",
    "Reconciler", "merge",
    "SyncSession",
]
