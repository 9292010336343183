"""Wire schemas for push and poll payloads.

The backend emits Mongo-style documents (``_id``, ``type``, ``status``,
``txHash``) from its list routes and the camelCase fragment shape from the
event stream. Both are validated here and turned into :class:`Fragment` or
:class:`RemoteStats` values before they reach the reconciler.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ledger_sync.core.errors import MalformedFragmentError
from ledger_sync.models.aggregate import RemoteStats
from ledger_sync.models.item import Fragment, ItemKind, Lifecycle, Origin

# Legacy status spellings used by the user routes
_LIFECYCLE_ALIASES = {
    "success": Lifecycle.CONFIRMED.value,
    "succeeded": Lifecycle.CONFIRMED.value,
    "canceled": Lifecycle.CANCELLED.value,
    "error": Lifecycle.FAILED.value,
}

_ITEM_LIST_KEYS = ("transactions", "items", "data")
_STATS_TIMESTAMP_KEYS = ("updatedAt", "lastUpdate")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ItemPayload(BaseModel):
    """Tracked item fragment as sent by the backend."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "_id"), min_length=1)
    kind: ItemKind = Field(validation_alias=AliasChoices("kind", "type"))
    amount: Decimal
    lifecycle: Lifecycle | None = Field(
        default=None, validation_alias=AliasChoices("lifecycle", "status")
    )
    source_ref: str | None = Field(
        default=None, validation_alias=AliasChoices("sourceRef", "source_ref", "txHash")
    )
    created_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("createdAt", "created_at", "submittedAt")
    )
    updated_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("updatedAt", "updated_at")
    )
    confirmed_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("confirmedAt", "confirmed_at")
    )
    confirmations: int | None = Field(default=None, ge=0)
    reason: str | None = Field(
        default=None, validation_alias=AliasChoices("reason", "errorMessage")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("id")
    @classmethod
    def _non_blank_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("id must not be blank")
        return value

    @field_validator("amount", mode="before")
    @classmethod
    def _float_as_string(cls, value: Any) -> Any:
        # repr of a float, not its binary expansion
        if isinstance(value, float):
            return str(value)
        return value

    @field_validator("amount")
    @classmethod
    def _finite_amount(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("amount must be finite")
        return value

    @field_validator("lifecycle", mode="before")
    @classmethod
    def _normalise_lifecycle(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _LIFECYCLE_ALIASES.get(lowered, lowered)
        return value

    @field_validator("created_at", "updated_at", "confirmed_at")
    @classmethod
    def _timezone_aware(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def to_fragment(self, origin: Origin, received_at: datetime) -> Fragment:
        return Fragment(
            id=self.id,
            kind=self.kind,
            amount=self.amount,
            origin=origin,
            updated_at=self.updated_at or received_at,
            lifecycle=self.lifecycle,
            created_at=self.created_at,
            confirmed_at=self.confirmed_at,
            source_ref=self.source_ref or None,
            reason=self.reason,
            confirmations=self.confirmations,
        )


def parse_item_fragment(payload: Any, origin: Origin, received_at: datetime) -> Fragment:
    """Validate one wire payload and build a fragment from it.

    Raises:
        MalformedFragmentError: If ``id``, ``kind`` or ``amount`` is missing or invalid.
    """
    if not isinstance(payload, Mapping):
        raise MalformedFragmentError(f"fragment payload must be an object, got {type(payload)}")
    try:
        parsed = ItemPayload.model_validate(dict(payload))
    except ValidationError as exc:
        raise MalformedFragmentError(f"invalid fragment: {exc.errors()}") from exc
    try:
        return parsed.to_fragment(origin, received_at)
    except ValueError as exc:
        raise MalformedFragmentError(f"invalid fragment {parsed.id!r}: {exc}") from exc


def parse_remote_stats(
    domain: str, payload: Any, origin: Origin, received_at: datetime
) -> RemoteStats:
    """Build a server-computed aggregate snapshot from a stats payload."""
    if not isinstance(payload, Mapping):
        raise MalformedFragmentError(f"stats payload for {domain} must be an object")

    values = {key: value for key, value in payload.items() if key not in _STATS_TIMESTAMP_KEYS}
    updated_at = received_at
    for key in _STATS_TIMESTAMP_KEYS:
        raw = payload.get(key)
        if raw:
            try:
                updated_at = _as_utc(datetime.fromisoformat(str(raw))) or received_at
            except ValueError as exc:
                raise MalformedFragmentError(f"invalid {key} in {domain} stats") from exc
            break
    return RemoteStats(domain=domain, values=values, updated_at=updated_at, origin=origin)


def _check_envelope(body: Mapping[str, Any]) -> None:
    if body.get("success") is False:
        raise MalformedFragmentError(str(body.get("message") or "backend reported failure"))


def extract_items(body: Any) -> list[Any]:
    """Unwrap the list of item payloads from a list-route response."""
    if isinstance(body, list):
        return body
    if isinstance(body, Mapping):
        _check_envelope(body)
        for key in _ITEM_LIST_KEYS:
            items = body.get(key)
            if isinstance(items, list):
                return items
    raise MalformedFragmentError("response does not contain an item list")


def extract_stats(body: Any) -> Mapping[str, Any]:
    """Unwrap the stats object from a stats-route response."""
    if isinstance(body, Mapping):
        _check_envelope(body)
        stats = body.get("stats")
        if isinstance(stats, Mapping):
            return stats
        if "stats" not in body:
            return {key: value for key, value in body.items() if key != "success"}
    raise MalformedFragmentError("response does not contain a stats object")
