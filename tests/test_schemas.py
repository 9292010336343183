"""Tests for wire payload validation."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from ledger_sync.core.errors import MalformedFragmentError
from ledger_sync.models.item import ItemKind, Lifecycle, Origin
from ledger_sync.schemas.fragment import (
    extract_items,
    extract_stats,
    parse_item_fragment,
    parse_remote_stats,
)
from tests.conftest import T0


class TestParseItemFragment:
    def test_accepts_backend_document_shape(self) -> None:
        payload = {
            "_id": "65f0c1",
            "type": "stake",
            "amount": "500",
            "status": "success",
            "txHash": "tx123",
            "createdAt": "2024-05-01T11:59:56Z",
            "confirmations": 3,
            "errorMessage": None,
        }
        fragment = parse_item_fragment(payload, Origin.POLL, T0)

        assert fragment.id == "65f0c1"
        assert fragment.kind is ItemKind.STAKE
        assert fragment.lifecycle is Lifecycle.CONFIRMED
        assert fragment.source_ref == "tx123"
        assert fragment.created_at == datetime(2024, 5, 1, 11, 59, 56, tzinfo=UTC)
        assert fragment.updated_at == T0
        assert fragment.confirmations == 3

    def test_accepts_camel_case_fragment_shape(self) -> None:
        payload = {
            "id": "tx-9",
            "kind": "unstake",
            "amount": "12.5",
            "lifecycle": "pending",
            "sourceRef": "0xabc",
            "updatedAt": "2024-05-01T12:00:03+00:00",
        }
        fragment = parse_item_fragment(payload, Origin.PUSH, T0)
        assert fragment.origin is Origin.PUSH
        assert fragment.updated_at == datetime(2024, 5, 1, 12, 0, 3, tzinfo=UTC)
        assert fragment.amount == Decimal("12.5")

    def test_float_amount_keeps_its_decimal_spelling(self) -> None:
        fragment = parse_item_fragment(
            {"id": "a", "kind": "transfer", "amount": 0.1}, Origin.POLL, T0
        )
        assert fragment.amount == Decimal("0.1")

    def test_naive_timestamps_are_utc(self) -> None:
        fragment = parse_item_fragment(
            {"id": "a", "kind": "claim", "amount": "1", "createdAt": "2024-05-01T11:00:00"},
            Origin.POLL,
            T0,
        )
        assert fragment.created_at is not None
        assert fragment.created_at.tzinfo is not None

    def test_missing_status_defaults_to_pending(self) -> None:
        fragment = parse_item_fragment({"id": 7, "kind": "stake", "amount": "1"}, Origin.POLL, T0)
        assert fragment.id == "7"
        assert fragment.lifecycle is Lifecycle.PENDING

    @pytest.mark.parametrize(
        "payload",
        [
            {"kind": "stake", "amount": "1"},
            {"id": "a", "amount": "1"},
            {"id": "a", "kind": "stake"},
            {"id": "a", "kind": "mint", "amount": "1"},
            {"id": "a", "kind": "stake", "amount": "lots"},
            {"id": "a", "kind": "stake", "amount": "NaN"},
            {"id": "", "kind": "stake", "amount": "1"},
            {"id": "   ", "kind": "stake", "amount": "1"},
            {"_id": "\t", "type": "stake", "amount": "1"},
            {"id": "a", "kind": "stake", "amount": "1", "confirmations": -1},
            ["not", "an", "object"],
        ],
    )
    def test_malformed_payloads_raise(self, payload) -> None:
        with pytest.raises(MalformedFragmentError):
            parse_item_fragment(payload, Origin.POLL, T0)


class TestEnvelopes:
    def test_extract_items_from_transactions_envelope(self) -> None:
        body = {"success": True, "transactions": [{"_id": "a"}], "pagination": {}}
        assert extract_items(body) == [{"_id": "a"}]

    def test_extract_items_from_bare_list(self) -> None:
        assert extract_items([{"id": "a"}]) == [{"id": "a"}]

    def test_unsuccessful_envelope_is_malformed(self) -> None:
        with pytest.raises(MalformedFragmentError):
            extract_items({"success": False, "message": "boom"})

    def test_missing_list_is_malformed(self) -> None:
        with pytest.raises(MalformedFragmentError):
            extract_items({"success": True})

    def test_extract_stats_prefers_stats_key(self) -> None:
        body = {"success": True, "stats": {"totalStaked": "10"}}
        assert extract_stats(body) == {"totalStaked": "10"}

    def test_extract_stats_falls_back_to_body(self) -> None:
        body = {"success": True, "totalStaked": "10", "rewards": "1"}
        assert extract_stats(body) == {"totalStaked": "10", "rewards": "1"}


class TestRemoteStats:
    def test_timestamp_comes_from_payload(self) -> None:
        stats = parse_remote_stats(
            "staking",
            {"totalStaked": "10", "lastUpdate": "2024-05-01T11:00:00Z"},
            Origin.POLL,
            T0,
        )
        assert stats.updated_at == datetime(2024, 5, 1, 11, 0, tzinfo=UTC)
        assert dict(stats.values) == {"totalStaked": "10"}

    def test_timestamp_defaults_to_receipt_time(self) -> None:
        stats = parse_remote_stats("admin", {"users": 4}, Origin.PUSH, T0)
        assert stats.updated_at == T0
        assert stats.stamp == (T0, Origin.PUSH.priority)

    def test_invalid_timestamp_is_malformed(self) -> None:
        with pytest.raises(MalformedFragmentError):
            parse_remote_stats("admin", {"updatedAt": "yesterday"}, Origin.POLL, T0)
