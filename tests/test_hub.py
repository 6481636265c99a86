"""
Tests for the subscription hub.
"""
import asyncio

import pytest

from wallet_broker.hub import SubscriptionHub
from wallet_broker.transport import QueuePort


async def pumped(port: QueuePort):
    """Write everything queued on the port and return it."""
    task = asyncio.create_task(port.pump())
    for _ in range(5):
        await asyncio.sleep(0)
    await port.close()
    await task
    return port.drain()


class TestSubscriptionHub:
    """Tests for SubscriptionHub."""

    @pytest.mark.asyncio
    async def test_snapshot_pushed_on_subscribe(self):
        hub = SubscriptionHub()
        port = QueuePort()
        state = ["a"]

        hub.subscribe("topic", port, "s1", lambda: list(state))

        # posted before subscribe returns
        assert port.pending_count() == 1
        assert await pumped(port) == [{"id": "s1", "subscription": ["a"]}]

    @pytest.mark.asyncio
    async def test_event_subscription_has_no_initial_push(self):
        hub = SubscriptionHub()
        port = QueuePort()
        hub.subscribe("events", port, "e1")
        assert port.pending_count() == 0

    @pytest.mark.asyncio
    async def test_notify_reaches_every_subscriber(self):
        hub = SubscriptionHub()
        first, second = QueuePort(), QueuePort()
        state = []
        hub.subscribe("topic", first, "s1", lambda: list(state))
        hub.subscribe("topic", second, "s9", lambda: list(state))

        state.append("x")
        assert hub.notify("topic") == 2

        assert await pumped(first) == [{"id": "s1", "subscription": ["x"]}]
        assert await pumped(second) == [{"id": "s9", "subscription": ["x"]}]

    @pytest.mark.asyncio
    async def test_snapshot_pushes_coalesce_until_written(self):
        hub = SubscriptionHub()
        port = QueuePort()
        state = []
        hub.subscribe("topic", port, "s1", lambda: list(state))
        for item in ("a", "b", "c"):
            state.append(item)
            hub.notify("topic")

        assert await pumped(port) == [{"id": "s1", "subscription": ["a", "b", "c"]}]

    @pytest.mark.asyncio
    async def test_coalescing_keeps_order_with_other_messages(self):
        hub = SubscriptionHub()
        port = QueuePort()
        state = [1]
        hub.subscribe("topic", port, "s1", lambda: list(state))
        port.post({"id": "7", "response": True})
        state.append(2)
        hub.notify("topic")

        messages = await pumped(port)
        assert messages == [
            {"id": "s1", "subscription": [1, 2]},
            {"id": "7", "response": True},
        ]

    @pytest.mark.asyncio
    async def test_events_are_never_merged(self):
        hub = SubscriptionHub()
        port = QueuePort()
        hub.subscribe("events", port, "e1")

        hub.publish("events", {"type": "chainChanged", "data": "0x1"})
        hub.publish("events", {"type": "chainChanged", "data": "0x89"})

        messages = await pumped(port)
        assert [m["subscription"]["data"] for m in messages] == ["0x1", "0x89"]

    @pytest.mark.asyncio
    async def test_notify_skips_event_subscriptions(self):
        hub = SubscriptionHub()
        port = QueuePort()
        hub.subscribe("events", port, "e1")
        assert hub.notify("events") == 0
        assert port.pending_count() == 0

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        hub = SubscriptionHub()
        port = QueuePort()
        hub.subscribe("topic", port, "s1", lambda: [])

        assert hub.unsubscribe(port, "s1") is True
        assert hub.unsubscribe(port, "s1") is False
        assert hub.notify("topic") == 0
        assert len(hub) == 0

    @pytest.mark.asyncio
    async def test_resubscribe_same_id_replaces(self):
        hub = SubscriptionHub()
        port = QueuePort()
        hub.subscribe("a", port, "s1", lambda: "a")
        hub.subscribe("b", port, "s1", lambda: "b")

        assert len(hub) == 1
        assert hub.subscriptions("a") == []
        assert [s.topic for s in hub.subscriptions("b")] == ["b"]

    @pytest.mark.asyncio
    async def test_drop_port(self):
        hub = SubscriptionHub()
        port, other = QueuePort(), QueuePort()
        hub.subscribe("a", port, "s1", lambda: [])
        hub.subscribe("b", port, "s2")
        hub.subscribe("a", other, "s1", lambda: [])

        assert hub.drop_port(port) == 2
        assert [s.port for s in hub.subscriptions()] == [other]

    @pytest.mark.asyncio
    async def test_closed_port_subscription_removed_on_delivery(self):
        hub = SubscriptionHub()
        port = QueuePort()
        hub.subscribe("events", port, "e1")
        await port.close()

        assert hub.publish("events", "x") == 0
        assert len(hub) == 0
