"""
Transport multiplexer for the wallet broker.

A ``Port`` is one long-lived bidirectional channel to a caller: a page's
injected provider or an instance of the approval UI. Many logical calls are
interleaved over it, each tagged with the caller-chosen envelope id:

    inbound   {"id": "7", "message": "pub(eth.request)", "request": {...}}
    response  {"id": "7", "response": ...}
    error     {"id": "7", "error": "...", "code": "REQUEST_NOT_FOUND", "rpcCode": -32603}
    push      {"id": "7", "subscription": ...}

Outbound messages leave a port strictly in the order they were posted. A
snapshot push that has not been written yet is replaced in place by a
newer snapshot for the same subscription, so a burst of mutations collapses
into the latest state without ever reordering. Event pushes are never merged.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from ._rate_limited_log import rate_limited_log
from .exceptions import BrokerError, ErrorCode, PayloadShapeError
from .ids import new_request_id
from .models import Envelope

if TYPE_CHECKING:
    from .channels import ChannelRegistry
    from .hub import SubscriptionHub

logger = logging.getLogger(__name__)

Message = Dict[str, Any]


def error_message(envelope_id: Optional[str], error: BaseException) -> Message:
    """Build the wire form of an error for a caller."""
    if isinstance(error, BrokerError):
        code, rpc_code = error.error_code.value, error.rpc_code
    else:
        code, rpc_code = ErrorCode.INTERNAL.value, BrokerError.rpc_code
    return {"id": envelope_id, "error": str(error), "code": code, "rpcCode": rpc_code}


class Port(ABC):
    """
    Abstract base class for a connection to one caller.

    Args:
        origin: Origin of the caller, as established by the transport
        trusted: Whether the caller is the wallet's own approval UI
    """

    def __init__(self, origin: Optional[str] = None, trusted: bool = False):
        self.id = new_request_id()
        self.origin = origin
        self.trusted = trusted
        self.closed = False
        self._outbox: Deque[Message] = deque()
        self._unsent_pushes: Dict[str, Message] = {}
        self._wakeup: Optional[asyncio.Event] = None
        # set while nothing is queued or being written
        self._drained: Optional[asyncio.Event] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id[:8]} origin={self.origin} trusted={self.trusted}>"

    def post(self, message: Message, coalesce: bool = False) -> bool:
        """
        Queue a message for the caller without suspending.

        Args:
            message: Message to send
            coalesce: For snapshot pushes, overwrite an unsent push carrying
                the same id instead of queueing another one

        Returns:
            False if the port is closed and the message was dropped
        """
        if self.closed:
            rate_limited_log(f"Dropping message for closed port {self.id}", level="debug",
                             logger_instance=logger)
            return False

        if coalesce:
            pending = self._unsent_pushes.get(message["id"])
            if pending is not None:
                pending["subscription"] = message["subscription"]
                return True
            message = dict(message)
            self._unsent_pushes[message["id"]] = message

        self._outbox.append(message)
        if self._drained is not None:
            self._drained.clear()
        if self._wakeup is not None:
            self._wakeup.set()
        return True

    def pending_count(self) -> int:
        return len(self._outbox)

    async def pump(self) -> None:
        """Write queued messages in order until the port closes."""
        self._wakeup = asyncio.Event()
        drained = self._drained_event()
        if self._outbox:
            self._wakeup.set()
        while not self.closed:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._outbox and not self.closed:
                message = self._outbox.popleft()
                if self._unsent_pushes.get(message.get("id")) is message:
                    del self._unsent_pushes[message["id"]]
                try:
                    await self.send(message)
                except Exception as e:
                    logger.warning(f"Send failed on {self!r}, closing: {e}")
                    self.closed = True
            if not self._outbox or self.closed:
                drained.set()

    def _drained_event(self) -> asyncio.Event:
        if self._drained is None:
            self._drained = asyncio.Event()
            if not self._outbox:
                self._drained.set()
        return self._drained

    async def flush(self, timeout: float = 1.0) -> bool:
        """
        Wait until every queued message has been written.

        Returns:
            False if messages were still queued when the timeout expired
        """
        try:
            await asyncio.wait_for(self._drained_event().wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @abstractmethod
    async def send(self, message: Message) -> None:
        """Write one message to the underlying channel."""
        pass

    async def close(self) -> None:
        self.closed = True
        self._outbox.clear()
        self._unsent_pushes.clear()
        if self._wakeup is not None:
            self._wakeup.set()
        if self._drained is not None:
            self._drained.set()


class QueuePort(Port):
    """
    In-process port: written messages land on an asyncio queue.

    Used to embed the broker next to its UI in one process, and in tests.
    """

    def __init__(self, origin: Optional[str] = None, trusted: bool = False):
        super().__init__(origin=origin, trusted=trusted)
        self.received: "asyncio.Queue[Message]" = asyncio.Queue()

    async def send(self, message: Message) -> None:
        self.received.put_nowait(message)

    async def next_message(self, timeout: float = 1.0) -> Message:
        return await asyncio.wait_for(self.received.get(), timeout)

    def drain(self) -> List[Message]:
        """Return every message written so far without waiting."""
        messages = []
        while not self.received.empty():
            messages.append(self.received.get_nowait())
        return messages


class Multiplexer:
    """
    Routes envelopes from ports to the channel registry and replies back.

    Each inbound call is served in its own task, so a call whose response is
    deferred until a user decision does not hold up later calls on the same
    port.

    Args:
        registry: Channel registry that validates and dispatches calls
        hub: Subscription hub, cleared for a port when it detaches
    """

    def __init__(self, registry: "ChannelRegistry", hub: "SubscriptionHub"):
        self.registry = registry
        self.hub = hub
        self._ports: Dict[str, Port] = {}
        self._pumps: Dict[str, "asyncio.Task[None]"] = {}
        self._calls: Dict[str, Set["asyncio.Task[None]"]] = {}
        self._detach_callbacks: List[Callable[[Port], None]] = []

    @property
    def ports(self) -> List[Port]:
        return list(self._ports.values())

    def on_detach(self, callback: Callable[[Port], None]) -> None:
        self._detach_callbacks.append(callback)

    def attach(self, port: Port) -> None:
        """Start serving a port."""
        if port.id in self._ports:
            return
        self._ports[port.id] = port
        self._calls[port.id] = set()
        self._pumps[port.id] = asyncio.get_running_loop().create_task(port.pump())
        logger.info(f"Attached {port!r}")

    def handle(self, port: Port, raw: Union[str, bytes, Message]) -> Optional["asyncio.Task[None]"]:
        """
        Accept one inbound message from a port.

        Returns:
            The task serving the call, or None if the message was rejected
            before dispatch
        """
        if port.id not in self._ports:
            raise BrokerError(f"{port!r} is not attached")

        data: Any = None
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            envelope = Envelope.model_validate(data)
        except (ValueError, ValidationError) as e:
            envelope_id = data.get("id") if isinstance(data, dict) else None
            logger.warning(f"Malformed envelope from {port!r}: {e}")
            port.post(error_message(envelope_id, PayloadShapeError(f"Malformed envelope: {e}")))
            return None

        task = asyncio.get_running_loop().create_task(self._serve(port, envelope))
        calls = self._calls[port.id]
        calls.add(task)
        task.add_done_callback(calls.discard)
        return task

    async def _serve(self, port: Port, envelope: Envelope) -> None:
        try:
            response = await self.registry.dispatch(port, envelope)
        except BrokerError as e:
            logger.debug(f"{envelope.message} [{envelope.id}] failed: {e}")
            port.post(error_message(envelope.id, e))
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unhandled error serving {envelope.message} [{envelope.id}]")
            port.post(error_message(envelope.id, e))
            return
        port.post({"id": envelope.id, "response": response})

    async def detach(self, port: Port) -> None:
        """
        Stop serving a port and drop its subscriptions.

        Calls already in flight are left to finish; their replies are dropped.
        Pending requests they created stay pending until decided.
        """
        if self._ports.pop(port.id, None) is None:
            return
        removed = self.hub.drop_port(port)
        await port.close()
        pump = self._pumps.pop(port.id)
        await asyncio.gather(pump, return_exceptions=True)
        self._calls.pop(port.id, None)
        for callback in list(self._detach_callbacks):
            callback(port)
        logger.info(f"Detached {port!r}, dropped {removed} subscription(s)")

    async def close(self, timeout: float = 1.0) -> None:
        """Give in-flight calls a chance to post their replies, then detach every port."""
        calls = [task for tasks in self._calls.values() for task in tasks]
        if calls:
            await asyncio.wait(calls, timeout=timeout)
        for port in self.ports:
            if not await port.flush(timeout):
                logger.warning(f"{port!r} closed with {port.pending_count()} unsent message(s)")
            await self.detach(port)
