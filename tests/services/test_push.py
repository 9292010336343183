"""Tests for the push subscription adapter."""

import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from ledger_sync.core.errors import ChannelError
from ledger_sync.models.events import ItemEnvelope, StatsEnvelope
from ledger_sync.models.health import HealthStatus
from ledger_sync.models.item import Lifecycle, Origin
from ledger_sync.services.aggregator import Aggregator
from ledger_sync.services.client import PushEvent
from ledger_sync.services.push import PushAdapter
from ledger_sync.services.reconciler import Reconciler


def _event(topic: str, payload) -> PushEvent:
    return PushEvent(topic=topic, data=json.dumps(payload))


class FakeStreamClient:
    """Serves one scripted session per ``open_event_stream`` call.

    A session is either an exception to raise on connect or a list of
    events delivered before the stream closes.
    """

    def __init__(self, sessions) -> None:
        self.sessions = list(sessions)
        self.opened = 0
        self.exhausted = asyncio.Event()

    @asynccontextmanager
    async def open_event_stream(self, topics):
        self.opened += 1
        if not self.sessions:
            self.exhausted.set()
            await asyncio.Event().wait()
        session = self.sessions.pop(0)
        if isinstance(session, Exception):
            raise session

        async def _events():
            for event in session:
                yield event

        yield _events()


@pytest.fixture()
def queue() -> asyncio.Queue:
    return asyncio.Queue()


def _adapter(client, queue, health, config, clock, **kwargs) -> PushAdapter:
    return PushAdapter(client, queue, health, config, clock=clock, **kwargs)


def test_backoff_doubles_up_to_ceiling(queue, health, config, clock) -> None:
    adapter = _adapter(FakeStreamClient([]), queue, health, config, clock)
    delays = [adapter.backoff_delay(attempt) for attempt in range(7)]
    assert delays == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
    assert adapter.backoff_delay(500) == 8.0


class TestHandleEvent:
    @pytest.fixture()
    def adapter(self, queue, health, config, clock) -> PushAdapter:
        return _adapter(FakeStreamClient([]), queue, health, config, clock)

    def test_transaction_status_becomes_item_fragment(self, adapter, queue, health) -> None:
        payload = {
            "id": "tx-1",
            "kind": "stake",
            "amount": "500",
            "status": "confirmed",
            "sourceRef": "tx123",
        }
        assert adapter.handle_event(_event("transaction.status", payload))

        envelope = queue.get_nowait()
        assert isinstance(envelope, ItemEnvelope)
        assert envelope.fragment.origin is Origin.PUSH
        assert envelope.fragment.lifecycle is Lifecycle.CONFIRMED
        assert health.current().last_push_event_at is not None

    def test_staking_topic_routes_items_and_summaries(self, adapter, queue) -> None:
        adapter.handle_event(_event("stake.updated", {"_id": "s-1", "type": "stake", "amount": 5}))
        adapter.handle_event(_event("rewards.earned", {"pendingRewards": "1.5"}))

        item, stats = queue.get_nowait(), queue.get_nowait()
        assert isinstance(item, ItemEnvelope)
        assert item.fragment.id == "s-1"
        assert isinstance(stats, StatsEnvelope)
        assert stats.stats.domain == "staking"
        assert stats.stats.origin is Origin.PUSH

    def test_rewards_event_keeps_stake_summary(self, adapter, queue, store, config, clock):
        aggregator = Aggregator()
        reconciler = Reconciler(store, config, clock=clock, on_stats=aggregator.apply_remote)
        adapter.handle_event(
            _event("stake.updated", {"currentStake": "500", "pendingRewards": "1"})
        )
        clock.advance(1)
        adapter.handle_event(_event("rewards.earned", {"amount": "5", "symbol": "MTK"}))

        while not queue.empty():
            reconciler.dispatch(queue.get_nowait())

        assert dict(aggregator.remote("staking").values) == {
            "currentStake": "500",
            "pendingRewards": "1",
            "amount": "5",
            "symbol": "MTK",
        }

    def test_admin_stats(self, adapter, queue) -> None:
        assert adapter.handle_event(_event("admin.stats", {"users": 4}))
        envelope = queue.get_nowait()
        assert envelope.stats.domain == "admin"

    def test_malformed_event_is_dropped(self, adapter, queue, health, caplog) -> None:
        assert not adapter.handle_event(PushEvent(topic="transaction.created", data="{oops"))
        assert not adapter.handle_event(_event("transaction.created", {"id": "tx-1"}))

        assert queue.empty()
        assert adapter.dropped == 2
        assert health.current().last_push_event_at is None
        assert "Dropping malformed" in caplog.text

    def test_blank_id_is_dropped_not_raised(self, adapter, queue) -> None:
        payload = {"id": "   ", "kind": "stake", "amount": "5"}
        assert not adapter.handle_event(_event("transaction.created", payload))
        assert adapter.dropped == 1
        assert queue.empty()

        good = {"id": "tx-2", "kind": "stake", "amount": "5"}
        assert adapter.handle_event(_event("transaction.created", good))
        assert queue.get_nowait().fragment.id == "tx-2"

    def test_unknown_topic_is_ignored(self, adapter, queue) -> None:
        assert not adapter.handle_event(_event("chat.message", {"text": "hi"}))
        assert queue.empty()
        assert adapter.dropped == 0


@pytest.mark.asyncio
async def test_reconnect_requests_snapshot_only_after_first_connect(
    queue, health, config, clock
) -> None:
    item = _event("transaction.created", {"id": "tx-1", "kind": "stake", "amount": "1"})
    client = FakeStreamClient([[item], ChannelError("reset"), [item]])
    refreshes: list[int] = []
    adapter = _adapter(
        client,
        queue,
        health,
        config,
        clock,
        on_reconnect=lambda: refreshes.append(1),
    )
    adapter.backoff_delay = lambda attempt: 0.01

    await adapter.start()
    await asyncio.wait_for(client.exhausted.wait(), timeout=2)
    await adapter.stop()

    assert client.opened == 4
    assert adapter.reconnects == 1
    assert refreshes == [1]
    assert queue.qsize() == 2
    assert not adapter.connected


@pytest.mark.asyncio
async def test_connection_state_feeds_health(queue, health, config, clock) -> None:
    item = _event("transaction.created", {"id": "tx-1", "kind": "stake", "amount": "1"})
    client = FakeStreamClient([[item]])
    adapter = _adapter(client, queue, health, config, clock)
    adapter.backoff_delay = lambda attempt: 0.01

    await adapter.start()
    await asyncio.wait_for(client.exhausted.wait(), timeout=2)

    assert health.status is HealthStatus.DEGRADED
    assert not health.current().push_connected
    await adapter.stop()
    assert not adapter.running


@pytest.mark.asyncio
async def test_stop_interrupts_backoff(queue, health, config, clock) -> None:
    client = FakeStreamClient([ChannelError("refused")])
    adapter = _adapter(client, queue, health, config, clock)
    adapter.backoff_delay = lambda attempt: 60.0

    await adapter.start()
    await asyncio.sleep(0.05)
    await asyncio.wait_for(adapter.stop(), timeout=1)

    assert client.opened == 1
    assert not adapter.running
