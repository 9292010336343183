"""Property tests for the pure merge function.

Fragments are drawn from a seeded generator so failures reproduce; every
permutation of a sequence must converge to the same item.
"""

import random
from datetime import timedelta
from functools import reduce
from itertools import permutations

import pytest

from ledger_sync.models.item import Fragment, ItemKind, Lifecycle, Origin, TrackedItem
from ledger_sync.services.reconciler import merge
from tests.conftest import T0

SEEDS = range(40)


def _random_fragment(rng: random.Random) -> Fragment:
    return Fragment(
        id="tx-1",
        kind=rng.choice([ItemKind.STAKE, ItemKind.UNSTAKE]),
        amount=rng.choice(["500", "500.5", "12"]),
        origin=rng.choice([Origin.POLL, Origin.PUSH]),
        updated_at=T0 + timedelta(seconds=rng.randint(0, 4)),
        lifecycle=rng.choice([None, *Lifecycle]),
        source_ref=rng.choice([None, None, "tx123", "tx456"]),
        reason=rng.choice([None, "reverted", "gas"]),
        confirmations=rng.choice([None, 0, 1, 5]),
    )


def _fold(fragments) -> TrackedItem:
    item = reduce(merge, fragments, None)
    assert item is not None
    return item


@pytest.mark.parametrize("seed", SEEDS)
def test_merge_is_order_independent(seed: int) -> None:
    rng = random.Random(seed)
    fragments = [_random_fragment(rng) for _ in range(4)]

    results = [_fold(order) for order in permutations(fragments)]

    assert all(result == results[0] for result in results)


@pytest.mark.parametrize("seed", SEEDS)
def test_merge_is_idempotent(seed: int) -> None:
    rng = random.Random(seed)
    fragments = [_random_fragment(rng) for _ in range(5)]

    once = _fold(fragments)

    assert _fold(fragments + fragments) == once
    for fragment in fragments:
        assert merge(once, fragment) == once


@pytest.mark.parametrize("seed", SEEDS)
def test_lifecycle_never_moves_backwards(seed: int) -> None:
    rng = random.Random(seed)
    item = None
    for _ in range(12):
        merged = merge(item, _random_fragment(rng))
        if item is not None:
            assert merged.lifecycle.rank >= item.lifecycle.rank
            if item.lifecycle.is_terminal:
                assert merged.lifecycle.is_terminal
        item = merged


def _terminal(lifecycle: Lifecycle, origin: Origin, source_ref: str | None) -> Fragment:
    return Fragment(
        id="tx-1",
        kind=ItemKind.STAKE,
        amount="500",
        origin=origin,
        updated_at=T0,
        lifecycle=lifecycle,
        source_ref=source_ref,
    )


@pytest.mark.parametrize(
    ("first", "second", "expected"),
    [
        # a chain reference wins over an unreferenced report
        (
            _terminal(Lifecycle.CONFIRMED, Origin.PUSH, None),
            _terminal(Lifecycle.FAILED, Origin.POLL, "tx1"),
            Lifecycle.FAILED,
        ),
        (
            _terminal(Lifecycle.FAILED, Origin.PUSH, None),
            _terminal(Lifecycle.CONFIRMED, Origin.POLL, "tx1"),
            Lifecycle.CONFIRMED,
        ),
        # both referenced: confirmed wins
        (
            _terminal(Lifecycle.FAILED, Origin.PUSH, "tx1"),
            _terminal(Lifecycle.CONFIRMED, Origin.POLL, "tx1"),
            Lifecycle.CONFIRMED,
        ),
        # neither referenced: confirmed is not trusted
        (
            _terminal(Lifecycle.CONFIRMED, Origin.PUSH, None),
            _terminal(Lifecycle.FAILED, Origin.POLL, None),
            Lifecycle.FAILED,
        ),
        (
            _terminal(Lifecycle.CANCELLED, Origin.PUSH, None),
            _terminal(Lifecycle.FAILED, Origin.POLL, None),
            Lifecycle.FAILED,
        ),
    ],
)
def test_conflicting_terminal_states(
    first: Fragment, second: Fragment, expected: Lifecycle
) -> None:
    assert _fold([first, second]).lifecycle is expected
    assert _fold([second, first]).lifecycle is expected


def test_later_write_wins_per_field() -> None:
    early = Fragment(
        id="tx-1", kind="stake", amount="500", origin=Origin.PUSH, updated_at=T0, confirmations=1
    )
    late = Fragment(
        id="tx-1",
        kind="stake",
        amount="500",
        origin=Origin.POLL,
        updated_at=T0 + timedelta(seconds=2),
        confirmations=4,
    )
    assert _fold([early, late]).confirmations == 4
    assert _fold([late, early]).confirmations == 4


def test_push_wins_timestamp_ties() -> None:
    poll = Fragment(
        id="tx-1", kind="stake", amount="500", origin=Origin.POLL, updated_at=T0, reason="poll"
    )
    push = Fragment(
        id="tx-1", kind="stake", amount="500", origin=Origin.PUSH, updated_at=T0, reason="push"
    )
    for order in ([poll, push], [push, poll]):
        item = _fold(order)
        assert item.reason == "push"
        assert item.origin is Origin.PUSH


def test_absent_fields_do_not_clear_values() -> None:
    first = Fragment(
        id="tx-1", kind="stake", amount="500", origin=Origin.POLL, updated_at=T0, source_ref="tx1"
    )
    later = Fragment(
        id="tx-1", kind="stake", amount="500", origin=Origin.POLL, updated_at=T0 + timedelta(1)
    )
    assert _fold([first, later]).source_ref == "tx1"


def test_created_at_keeps_earliest_report() -> None:
    first = Fragment(
        id="tx-1",
        kind="stake",
        amount="500",
        origin=Origin.POLL,
        updated_at=T0 + timedelta(seconds=5),
        created_at=T0 + timedelta(seconds=2),
    )
    second = Fragment(
        id="tx-1",
        kind="stake",
        amount="500",
        origin=Origin.PUSH,
        updated_at=T0 + timedelta(seconds=3),
    )
    item = _fold([first, second])
    assert item.created_at == T0 + timedelta(seconds=2)
    assert item.updated_at == T0 + timedelta(seconds=5)
