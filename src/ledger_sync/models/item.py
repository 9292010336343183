# src/ledger_sync/models/item.py
"""Tracked ledger items and the fragments that update them."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

# (updated_at, origin priority) of the write that last set a field
Stamp = tuple[datetime, int]

# Fields resolved per field by last-writer-wins
MERGEABLE_FIELDS: tuple[str, ...] = (
    "kind",
    "amount",
    "confirmed_at",
    "source_ref",
    "reason",
    "confirmations",
)


class ItemKind(str, Enum):
    """Kinds of transaction or stake-affecting records."""

    STAKE = "stake"
    UNSTAKE = "unstake"
    CLAIM = "claim"
    TRANSFER = "transfer"
    APPROVE = "approve"

    @property
    def affects_staking(self) -> bool:
        return self in (ItemKind.STAKE, ItemKind.UNSTAKE, ItemKind.CLAIM)


class Lifecycle(str, Enum):
    """Lifecycle of a tracked item.

    ``optimistic < pending < confirmed``; ``failed`` and ``cancelled`` are
    terminal and reachable from ``optimistic`` or ``pending`` only.
    """

    OPTIMISTIC = "optimistic"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def rank(self) -> int:
        if self is Lifecycle.OPTIMISTIC:
            return 0
        if self is Lifecycle.PENDING:
            return 1
        return 2

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2


class Origin(str, Enum):
    """Channel that authored a fragment."""

    OPTIMISTIC = "optimistic"
    POLL = "poll"
    PUSH = "push"

    @property
    def priority(self) -> int:
        """Tie-break weight for equal timestamps; push is the most specific."""
        return {Origin.OPTIMISTIC: 0, Origin.POLL: 1, Origin.PUSH: 2}[self]

    @property
    def is_authoritative(self) -> bool:
        return self is not Origin.OPTIMISTIC


def parse_amount(value: Any) -> Decimal:
    """Convert a string-encoded quantity into an exact decimal.

    Raises:
        ValueError: If the value is not a finite decimal number.
    """
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"invalid amount: {value!r}")
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid amount: {value!r}")
    return amount


def _require_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("tracked items require a non-empty string id")
    return value


@dataclass(frozen=True)
class TrackedItem:
    """One logical transaction as seen by the client.

    ``stamps`` remembers, for each mergeable field, which write last set it so
    that later merges stay order-independent.
    """

    id: str
    kind: ItemKind
    lifecycle: Lifecycle
    amount: Decimal
    created_at: datetime
    updated_at: datetime
    origin: Origin
    confirmed_at: datetime | None = None
    source_ref: str | None = None
    retry_count: int = 0
    reason: str | None = None
    confirmations: int = 0
    provisional: bool = False
    lifecycle_backed: bool = False
    stamps: Mapping[str, Stamp] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _require_id(self.id)
        object.__setattr__(self, "kind", ItemKind(self.kind))
        object.__setattr__(self, "lifecycle", Lifecycle(self.lifecycle))
        object.__setattr__(self, "origin", Origin(self.origin))
        object.__setattr__(self, "amount", parse_amount(self.amount))
        if self.updated_at < self.created_at:
            raise ValueError(f"item {self.id!r} updated before it was created")
        if self.retry_count < 0:
            raise ValueError("retry_count must not be negative")

    def observable(self) -> tuple[Any, ...]:
        """Return the fields whose change observers must hear about."""
        return (
            self.id,
            self.kind,
            self.lifecycle,
            self.amount,
            self.created_at,
            self.confirmed_at,
            self.source_ref,
            self.reason,
            self.confirmations,
            self.provisional,
        )

    def with_changes(self, **changes: Any) -> TrackedItem:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase shape the UI bindings consume."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "lifecycle": self.lifecycle.value,
            "amount": str(self.amount),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "sourceRef": self.source_ref,
            "retryCount": self.retry_count,
            "origin": self.origin.value,
            "reason": self.reason,
            "confirmations": self.confirmations,
        }


@dataclass(frozen=True)
class Fragment:
    """A partial or full update to a tracked item from one channel.

    Absent optional fields are ``None``. Defaults that depend on the origin
    are filled in here so every merge path sees the same values.
    """

    id: str
    kind: ItemKind
    amount: Decimal
    origin: Origin
    updated_at: datetime
    lifecycle: Lifecycle | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None
    source_ref: str | None = None
    reason: str | None = None
    confirmations: int | None = None

    def __post_init__(self) -> None:
        _require_id(self.id)
        object.__setattr__(self, "kind", ItemKind(self.kind))
        object.__setattr__(self, "origin", Origin(self.origin))
        object.__setattr__(self, "amount", parse_amount(self.amount))
        if self.lifecycle is not None:
            object.__setattr__(self, "lifecycle", Lifecycle(self.lifecycle))
        else:
            object.__setattr__(self, "lifecycle", self.effective_lifecycle)
        if self.created_at is None:
            object.__setattr__(self, "created_at", self.updated_at)
        elif self.updated_at < self.created_at:
            object.__setattr__(self, "updated_at", self.created_at)
        if self.lifecycle is Lifecycle.CONFIRMED and self.confirmed_at is None:
            object.__setattr__(self, "confirmed_at", self.updated_at)
        if self.source_ref is not None and not self.source_ref:
            object.__setattr__(self, "source_ref", None)

    @property
    def stamp(self) -> Stamp:
        return (self.updated_at, self.origin.priority)

    @property
    def effective_lifecycle(self) -> Lifecycle:
        if self.lifecycle is not None:
            return self.lifecycle
        if self.origin is Origin.OPTIMISTIC:
            return Lifecycle.OPTIMISTIC
        return Lifecycle.PENDING

    @property
    def first_seen_at(self) -> datetime:
        return self.created_at or self.updated_at

    @property
    def backed(self) -> bool:
        """True when the fragment carries a chain reference."""
        return self.source_ref is not None
