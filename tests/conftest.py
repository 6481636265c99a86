"""
Pytest fixtures for the wallet broker tests.
"""
import asyncio
import itertools
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from wallet_broker import Broker, BrokerConfig, QueuePort, StaticPermissionOracle
from wallet_broker._rate_limited_log import reset_rate_limits
from wallet_broker.models import AddEthereumChainParameter, SigningRequest

PAGE_ORIGIN = "https://app.example"
OTHER_ORIGIN = "https://unknown.example"
UI_ORIGIN = "chrome-extension://wallet"
ACCOUNT = "0x" + "ab" * 20


def chain_param(chain_id: str = "0x89", name: str = "Polygon") -> AddEthereumChainParameter:
    return AddEthereumChainParameter(
        chainId=chain_id,
        chainName=name,
        rpcUrls=["https://rpc.example/" + chain_id],
        nativeCurrency={"name": "Matic", "symbol": "MATIC", "decimals": 18},
    )


def signing_request(request_id: str, method: str = "personal_sign", scope: str = "ethereum",
                    payload: Any = "hello") -> SigningRequest:
    return SigningRequest(
        id=request_id, url=PAGE_ORIGIN, chainScope=scope, method=method,
        account=ACCOUNT, payload=payload, ethChainId=1 if scope == "ethereum" else None,
    )


class Client:
    """Drives one port the way a page or the approval UI would."""

    _ids = itertools.count(1)

    def __init__(self, broker: Broker, origin: Optional[str], trusted: bool):
        self.broker = broker
        self.port = broker.connect(QueuePort(origin=origin, trusted=trusted))
        self.backlog: List[Dict[str, Any]] = []
        self.pushes: Dict[str, List[Any]] = {}

    def send(self, channel: str, request: Any = None) -> str:
        envelope_id = str(next(self._ids))
        self.broker.multiplexer.handle(
            self.port, {"id": envelope_id, "message": channel, "request": request}
        )
        return envelope_id

    async def next_for(self, envelope_id: Optional[str], timeout: float = 1.0) -> Dict[str, Any]:
        """Next message tagged with envelope_id; others are kept for later."""
        for i, message in enumerate(self.backlog):
            if message["id"] == envelope_id:
                return self.backlog.pop(i)
        while True:
            message = await self.port.next_message(timeout)
            if message["id"] == envelope_id:
                return message
            self.backlog.append(message)

    async def reply(self, envelope_id: str) -> Dict[str, Any]:
        """Response or error for a call; pushes seen on the way are recorded."""
        while True:
            message = await self.next_for(envelope_id)
            if "subscription" in message:
                self.pushes.setdefault(envelope_id, []).append(message["subscription"])
                continue
            return message

    async def push(self, envelope_id: str) -> Any:
        recorded = self.pushes.get(envelope_id)
        if recorded:
            return recorded.pop(0)
        message = await self.next_for(envelope_id)
        assert "subscription" in message, message
        return message["subscription"]

    async def call(self, channel: str, request: Any = None) -> Any:
        """Send a call and return its response, failing on an error reply."""
        message = await self.reply(self.send(channel, request))
        assert "error" not in message, message
        return message["response"]

    async def error(self, channel: str, request: Any = None) -> Dict[str, Any]:
        message = await self.reply(self.send(channel, request))
        assert "error" in message, message
        return message

    def no_messages(self) -> bool:
        return not self.backlog and self.port.received.empty()


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def settle():
    """Let queued tasks run until they block."""
    return _settle


@pytest.fixture
def signer():
    signer = AsyncMock()
    signer.sign.return_value = "0xsigned"
    return signer


@pytest.fixture
def broadcaster():
    broadcaster = AsyncMock()
    broadcaster.send_signed.return_value = "0xhash"
    return broadcaster


@pytest.fixture
def permissions():
    return StaticPermissionOracle({PAGE_ORIGIN: ["eth", "substrate"]})


@pytest.fixture
def config():
    return BrokerConfig(extension_origins=(UI_ORIGIN,), default_chain_id=1)


@pytest_asyncio.fixture
async def broker(config, signer, broadcaster, permissions):
    async with Broker(config, signer=signer, permissions=permissions, broadcaster=broadcaster) as broker:
        yield broker


@pytest_asyncio.fixture
async def ui(broker):
    return Client(broker, UI_ORIGIN, trusted=True)


@pytest_asyncio.fixture
async def page(broker):
    return Client(broker, PAGE_ORIGIN, trusted=False)


@pytest_asyncio.fixture
async def make_client(broker):
    def _make(origin: Optional[str], trusted: bool = False) -> Client:
        return Client(broker, origin, trusted)
    return _make
