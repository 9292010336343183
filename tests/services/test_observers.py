"""Tests for observer fan-out."""

import asyncio

import pytest

from ledger_sync.models.aggregate import AggregateSnapshot
from ledger_sync.models.events import AggregateChanged
from ledger_sync.services.observers import ObserverHub


def _event(domain: str = "staking") -> AggregateChanged:
    return AggregateChanged(domain=domain, snapshot=AggregateSnapshot(domain=domain))


def test_unknown_domain_is_rejected() -> None:
    hub = ObserverHub()
    with pytest.raises(ValueError):
        hub.subscribe("orders")
    with pytest.raises(ValueError):
        hub.add_listener("orders", print)


def test_events_reach_only_their_domain() -> None:
    hub = ObserverHub()
    staking = hub.subscribe("staking")
    admin = hub.subscribe("admin")

    hub.publish("staking", _event())

    assert staking.drain() == [_event()]
    assert admin.drain() == []


def test_listener_removal() -> None:
    hub = ObserverHub()
    seen = []
    remove = hub.add_listener("health", seen.append)
    assert hub.subscriber_count("health") == 1

    remove()
    remove()
    hub.publish("health", _event("health"))

    assert seen == []
    assert hub.subscriber_count("health") == 0


def test_failing_callback_does_not_block_others(caplog) -> None:
    hub = ObserverHub()
    seen = []

    def broken(event) -> None:
        raise RuntimeError("binding gone")

    hub.add_listener("admin", broken)
    hub.add_listener("admin", seen.append)
    hub.publish("admin", _event("admin"))

    assert seen == [_event("admin")]
    assert "Observer callback for admin failed" in caplog.text


@pytest.mark.asyncio
async def test_subscription_iterates_until_closed() -> None:
    hub = ObserverHub()
    subscription = hub.subscribe("transactions")

    async def consume():
        return [event async for event in subscription]

    consumer = asyncio.create_task(consume())
    hub.publish("transactions", _event("transactions"))
    await asyncio.sleep(0)
    subscription.close()
    received = await asyncio.wait_for(consumer, timeout=1)

    assert received == [_event("transactions")]
    assert subscription.closed
    assert hub.subscriber_count("transactions") == 0


@pytest.mark.asyncio
async def test_hub_close_ends_every_subscription() -> None:
    hub = ObserverHub()
    first = hub.subscribe("staking")
    second = hub.subscribe("health")

    hub.close()
    hub.publish("staking", _event())

    assert [event async for event in first] == []
    assert [event async for event in second] == []
