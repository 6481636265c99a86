"""
Tests for ports and the transport multiplexer.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from wallet_broker.exceptions import BrokerError, ErrorCode, RequestNotFoundError
from wallet_broker.transport import Multiplexer, Port, QueuePort, error_message


class FailingPort(Port):
    """Port whose underlying channel is gone."""

    async def send(self, message):
        raise ConnectionError("socket closed")


class StalledPort(Port):
    """Port whose writes block until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.sent = []

    async def send(self, message):
        await self.release.wait()
        self.sent.append(message)


def make_multiplexer(dispatch=None):
    registry = MagicMock()
    registry.dispatch = dispatch or AsyncMock(return_value=True)
    hub = MagicMock()
    hub.drop_port.return_value = 0
    return Multiplexer(registry, hub), registry, hub


class TestErrorMessage:
    def test_broker_error(self):
        message = error_message("3", RequestNotFoundError("abc"))
        assert message == {
            "id": "3",
            "error": "Request abc no longer exists",
            "code": "REQUEST_NOT_FOUND",
            "rpcCode": -32603,
        }

    def test_unexpected_error_is_internal(self):
        message = error_message("3", KeyError("x"))
        assert message["code"] == ErrorCode.INTERNAL.value


class TestPort:
    """Tests for the Port outbox."""

    @pytest.mark.asyncio
    async def test_messages_written_in_post_order(self):
        port = QueuePort()
        multiplexer, _, _ = make_multiplexer()
        multiplexer.attach(port)

        for i in range(5):
            port.post({"id": str(i), "response": i})

        received = [await port.next_message() for _ in range(5)]
        assert [m["response"] for m in received] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_post_to_closed_port_is_dropped(self):
        port = QueuePort()
        await port.close()
        assert port.post({"id": "1", "response": True}) is False
        assert port.pending_count() == 0

    @pytest.mark.asyncio
    async def test_send_failure_closes_port(self):
        port = FailingPort(origin="https://app.example")
        task = asyncio.create_task(port.pump())
        port.post({"id": "1", "response": True})
        await asyncio.wait_for(task, 1.0)

        assert port.closed
        assert port.post({"id": "2", "response": True}) is False

    @pytest.mark.asyncio
    async def test_flush_waits_for_writes(self):
        port = QueuePort()
        task = asyncio.create_task(port.pump())
        port.post({"id": "1", "response": True})

        assert await port.flush() is True
        assert port.drain() == [{"id": "1", "response": True}]
        await port.close()
        await task

    @pytest.mark.asyncio
    async def test_flush_with_nothing_queued(self):
        port = QueuePort()
        assert await port.flush(timeout=0) is True

    @pytest.mark.asyncio
    async def test_flush_times_out_on_stalled_send(self):
        port = StalledPort()
        task = asyncio.create_task(port.pump())
        port.post({"id": "1", "response": True})

        assert await port.flush(timeout=0.05) is False
        assert port.sent == []

        # released writes complete the pending flush
        waiter = asyncio.create_task(port.flush(timeout=1.0))
        port.release.set()
        assert await waiter is True
        assert port.sent == [{"id": "1", "response": True}]
        await port.close()
        await task


class TestMultiplexer:
    """Tests for the Multiplexer."""

    @pytest.mark.asyncio
    async def test_response_carries_envelope_id(self):
        multiplexer, registry, _ = make_multiplexer(AsyncMock(return_value={"ok": 1}))
        port = QueuePort(origin="https://app.example")
        multiplexer.attach(port)

        task = multiplexer.handle(port, json.dumps({"id": "42", "message": "pub(eth.request)", "request": {}}))
        await task

        assert await port.next_message() == {"id": "42", "response": {"ok": 1}}
        envelope = registry.dispatch.call_args[0][1]
        assert envelope.message == "pub(eth.request)"

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        multiplexer, registry, _ = make_multiplexer()
        port = QueuePort()
        multiplexer.attach(port)

        assert multiplexer.handle(port, "{not json") is None

        message = await port.next_message()
        assert message["id"] is None
        assert message["code"] == ErrorCode.PAYLOAD_SHAPE.value
        registry.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_envelope_without_channel(self):
        multiplexer, _, _ = make_multiplexer()
        port = QueuePort()
        multiplexer.attach(port)

        assert multiplexer.handle(port, {"id": "5", "request": {}}) is None

        message = await port.next_message()
        assert message["id"] == "5"
        assert message["code"] == ErrorCode.PAYLOAD_SHAPE.value

    @pytest.mark.asyncio
    async def test_broker_error_becomes_error_reply(self):
        multiplexer, _, _ = make_multiplexer(AsyncMock(side_effect=RequestNotFoundError("r1")))
        port = QueuePort()
        multiplexer.attach(port)

        await multiplexer.handle(port, {"id": "1", "message": "pri(signing.cancel)"})

        message = await port.next_message()
        assert message["code"] == "REQUEST_NOT_FOUND"
        assert "r1" in message["error"]

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal(self):
        multiplexer, _, _ = make_multiplexer(AsyncMock(side_effect=KeyError("boom")))
        port = QueuePort()
        multiplexer.attach(port)

        await multiplexer.handle(port, {"id": "1", "message": "pub(eth.request)"})

        message = await port.next_message()
        assert message["code"] == "INTERNAL"

    @pytest.mark.asyncio
    async def test_deferred_call_does_not_block_later_calls(self):
        release = asyncio.Event()

        async def dispatch(port, envelope):
            if envelope.id == "slow":
                await release.wait()
            return envelope.id

        multiplexer, _, _ = make_multiplexer(dispatch)
        port = QueuePort()
        multiplexer.attach(port)

        multiplexer.handle(port, {"id": "slow", "message": "pub(eth.request)"})
        multiplexer.handle(port, {"id": "fast", "message": "pub(eth.request)"})

        assert await port.next_message() == {"id": "fast", "response": "fast"}
        release.set()
        assert await port.next_message() == {"id": "slow", "response": "slow"}

    @pytest.mark.asyncio
    async def test_handle_requires_attached_port(self):
        multiplexer, _, _ = make_multiplexer()
        with pytest.raises(BrokerError):
            multiplexer.handle(QueuePort(), {"id": "1", "message": "pub(eth.request)"})

    @pytest.mark.asyncio
    async def test_detach(self):
        multiplexer, _, hub = make_multiplexer()
        port = QueuePort()
        callback = MagicMock()
        multiplexer.on_detach(callback)
        multiplexer.attach(port)

        await multiplexer.detach(port)

        assert port.closed
        assert multiplexer.ports == []
        hub.drop_port.assert_called_once_with(port)
        callback.assert_called_once_with(port)

        # second detach is a no-op
        await multiplexer.detach(port)
        callback.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_lets_in_flight_replies_out(self):
        release = asyncio.Event()

        async def dispatch(port, envelope):
            await release.wait()
            return "late"

        multiplexer, _, _ = make_multiplexer(dispatch)
        port = QueuePort()
        multiplexer.attach(port)
        multiplexer.handle(port, {"id": "1", "message": "pub(eth.request)"})
        await asyncio.sleep(0)

        asyncio.get_running_loop().call_soon(release.set)
        await multiplexer.close()

        assert port.closed
        assert port.drain() == [{"id": "1", "response": "late"}]
