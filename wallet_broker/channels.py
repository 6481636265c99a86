"""
Channel registry for the wallet broker.

The catalogue is closed: ``ChannelName`` enumerates every channel, and each
has exactly one ``ChannelSpec`` declaring its payload schema, response type,
push type and, for public channels, the capability a calling origin must
hold. ``ChannelRegistry`` refuses to start unless its handler table covers
the catalogue exactly, so a channel cannot be added without a handler.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ValidationError

from ._rate_limited_log import rate_limited_log
from .collaborators import PermissionOracle
from .exceptions import OriginNotPermittedError, PayloadShapeError, UnknownChannelError
from .models import (
    AddEthereumChainRequest, ApproveSignAndSend, CustomEvmNetwork, Envelope, EthRequest,
    EthRequestChainId, RequestIdOnly, SigningRequest, SubstrateSignPayload, WatchAssetRequest,
    to_wire,
)
from .transport import Port

logger = logging.getLogger(__name__)


class ChannelName(str, Enum):
    ETH_REQUEST = "pub(eth.request)"
    ETH_SUBSCRIBE = "pub(eth.subscribe)"
    ETH_MIMIC_METAMASK = "pub(eth.mimicMetaMask)"
    SUBSTRATE_SIGN = "pub(substrate.sign)"

    ETH_REQUEST_PRIVATE = "pri(eth.request)"
    ETH_SIGNING_CANCEL = "pri(eth.signing.cancel)"
    ETH_SIGNING_APPROVE_SIGN = "pri(eth.signing.approveSign)"
    ETH_SIGNING_APPROVE_SIGN_AND_SEND = "pri(eth.signing.approveSignAndSend)"
    ETH_SIGNING_SUBSCRIBE = "pri(eth.signing.requests.subscribe)"
    ETH_NETWORK_ADD_REQUESTS = "pri(eth.networks.add.requests)"
    ETH_NETWORK_ADD_APPROVE = "pri(eth.networks.add.approve)"
    ETH_NETWORK_ADD_CANCEL = "pri(eth.networks.add.cancel)"
    ETH_NETWORK_ADD_SUBSCRIBE = "pri(eth.networks.add.subscribe)"
    ETH_WATCH_ASSET_APPROVE = "pri(eth.watchasset.requests.approve)"
    ETH_WATCH_ASSET_CANCEL = "pri(eth.watchasset.requests.cancel)"
    ETH_WATCH_ASSET_SUBSCRIBE = "pri(eth.watchasset.requests.subscribe)"
    ETH_WATCH_ASSET_SUBSCRIBE_BY_ID = "pri(eth.watchasset.requests.subscribe.byid)"
    ETH_NETWORKS_SUBSCRIBE = "pri(eth.networks.subscribe)"
    ETH_NETWORKS_ADD_CUSTOM = "pri(eth.networks.add.custom)"
    ETH_NETWORKS_REMOVE_CUSTOM = "pri(eth.networks.removeCustomNetwork)"
    ETH_NETWORKS_CLEAR_CUSTOM = "pri(eth.networks.clearCustomNetworks)"
    SIGNING_SUBSCRIBE = "pri(signing.requests.subscribe)"
    SIGNING_APPROVE_SIGN = "pri(signing.approveSign)"
    SIGNING_CANCEL = "pri(signing.cancel)"
    UNSUBSCRIBE = "pri(unsubscribe)"


class ChannelFamily(str, Enum):
    PUBLIC = "pub"
    PRIVATE = "pri"


class Capability(str, Enum):
    ETH = "eth"
    SUBSTRATE = "substrate"


@dataclass(frozen=True)
class ChannelSpec:
    """
    Declared shape of one channel.

    Attributes:
        name: Channel name
        payload: Pydantic model the payload must satisfy, or None for no payload
        response: Type of the direct response (``bool`` ack for subscriptions)
        push: Type of subscription pushes, None for plain request/response
        capability: Capability a public caller's origin must hold
    """
    name: ChannelName
    payload: Optional[Type[BaseModel]]
    response: Any
    push: Any = None
    capability: Optional[Capability] = None

    @property
    def family(self) -> ChannelFamily:
        return ChannelFamily(self.name.value[:3])

    @property
    def is_subscription(self) -> bool:
        return self.push is not None

    def parse(self, request: Any) -> Any:
        """
        Validate a raw payload against the channel's schema.

        Raises:
            PayloadShapeError: If the payload does not match
        """
        if self.payload is None:
            if request in (None, {}, []):
                return None
            raise PayloadShapeError(f"{self.name.value} takes no payload", channel=self.name.value)
        try:
            return self.payload.model_validate(request)
        except ValidationError as e:
            raise PayloadShapeError(
                f"Invalid payload for {self.name.value}: {e.errors(include_url=False)}",
                channel=self.name.value,
            ) from e


_N = ChannelName

CATALOGUE: Dict[ChannelName, ChannelSpec] = {spec.name: spec for spec in (
    ChannelSpec(_N.ETH_REQUEST, EthRequest, Any, capability=Capability.ETH),
    ChannelSpec(_N.ETH_SUBSCRIBE, None, bool, push=dict, capability=Capability.ETH),
    ChannelSpec(_N.ETH_MIMIC_METAMASK, None, bool),
    ChannelSpec(_N.SUBSTRATE_SIGN, SubstrateSignPayload, str, capability=Capability.SUBSTRATE),

    ChannelSpec(_N.ETH_REQUEST_PRIVATE, EthRequestChainId, Any),
    ChannelSpec(_N.ETH_SIGNING_CANCEL, RequestIdOnly, bool),
    ChannelSpec(_N.ETH_SIGNING_APPROVE_SIGN, RequestIdOnly, bool),
    ChannelSpec(_N.ETH_SIGNING_APPROVE_SIGN_AND_SEND, ApproveSignAndSend, bool),
    ChannelSpec(_N.ETH_SIGNING_SUBSCRIBE, None, bool, push=List[SigningRequest]),
    ChannelSpec(_N.ETH_NETWORK_ADD_REQUESTS, None, List[AddEthereumChainRequest]),
    ChannelSpec(_N.ETH_NETWORK_ADD_APPROVE, RequestIdOnly, bool),
    ChannelSpec(_N.ETH_NETWORK_ADD_CANCEL, RequestIdOnly, bool),
    ChannelSpec(_N.ETH_NETWORK_ADD_SUBSCRIBE, None, bool, push=List[AddEthereumChainRequest]),
    ChannelSpec(_N.ETH_WATCH_ASSET_APPROVE, RequestIdOnly, bool),
    ChannelSpec(_N.ETH_WATCH_ASSET_CANCEL, RequestIdOnly, bool),
    ChannelSpec(_N.ETH_WATCH_ASSET_SUBSCRIBE, None, bool, push=List[WatchAssetRequest]),
    ChannelSpec(_N.ETH_WATCH_ASSET_SUBSCRIBE_BY_ID, RequestIdOnly, bool, push=Optional[WatchAssetRequest]),
    ChannelSpec(_N.ETH_NETWORKS_SUBSCRIBE, None, bool, push=bool),
    ChannelSpec(_N.ETH_NETWORKS_ADD_CUSTOM, CustomEvmNetwork, bool),
    ChannelSpec(_N.ETH_NETWORKS_REMOVE_CUSTOM, RequestIdOnly, bool),
    ChannelSpec(_N.ETH_NETWORKS_CLEAR_CUSTOM, None, bool),
    ChannelSpec(_N.SIGNING_SUBSCRIBE, None, bool, push=List[SigningRequest]),
    ChannelSpec(_N.SIGNING_APPROVE_SIGN, RequestIdOnly, bool),
    ChannelSpec(_N.SIGNING_CANCEL, RequestIdOnly, bool),
    ChannelSpec(_N.UNSUBSCRIBE, RequestIdOnly, bool),
)}


@dataclass(frozen=True)
class CallContext:
    """Who is calling, and under which envelope id."""
    port: Port
    envelope_id: str
    channel: ChannelSpec

    @property
    def origin(self) -> str:
        return self.port.origin or ""


Handler = Callable[[CallContext, Any], Awaitable[Any]]


class ChannelRegistry:
    """
    Validates envelopes against the catalogue and dispatches them.

    Args:
        handlers: One coroutine handler per catalogue channel
        permissions: Oracle consulted for public channels

    Raises:
        TypeError: If handlers do not cover the catalogue exactly
    """

    def __init__(self, handlers: Mapping[ChannelName, Handler], permissions: PermissionOracle):
        missing = set(CATALOGUE) - set(handlers)
        extra = set(handlers) - set(CATALOGUE)
        if missing or extra:
            raise TypeError(
                "Channel handlers must match the catalogue exactly; "
                f"missing: {sorted(n.value for n in missing)}, extra: {sorted(str(n) for n in extra)}"
            )
        self.handlers: Dict[ChannelName, Handler] = dict(handlers)
        self.permissions = permissions

    @staticmethod
    def lookup(name: str) -> ChannelSpec:
        """
        Raises:
            UnknownChannelError: If the name is not in the catalogue
        """
        try:
            return CATALOGUE[ChannelName(name)]
        except ValueError:
            raise UnknownChannelError(name) from None

    async def authorize(self, port: Port, spec: ChannelSpec) -> None:
        """
        Raises:
            OriginNotPermittedError: If the port may not use the channel
        """
        origin = port.origin or ""
        if spec.family is ChannelFamily.PRIVATE:
            if not port.trusted:
                rate_limited_log(f"Untrusted origin {origin} called private channel {spec.name.value}",
                                 logger_instance=logger)
                raise OriginNotPermittedError(origin, spec.name.value)
            return
        if spec.capability is None:
            return
        if not await self.permissions.has_capability(origin, spec.capability.value):
            rate_limited_log(f"Origin {origin} lacks capability {spec.capability.value}",
                             logger_instance=logger)
            raise OriginNotPermittedError(origin, spec.capability.value)

    async def dispatch(self, port: Port, envelope: Envelope) -> Any:
        """
        Validate an envelope and run its handler.

        Returns:
            The JSON-ready response

        Raises:
            UnknownChannelError: If the channel is not in the catalogue
            OriginNotPermittedError: If the caller may not use the channel
            PayloadShapeError: If the payload fails the channel's schema
        """
        spec = self.lookup(envelope.message)
        await self.authorize(port, spec)
        payload = spec.parse(envelope.request)
        context = CallContext(port=port, envelope_id=envelope.id, channel=spec)
        result = await self.handlers[spec.name](context, payload)
        return to_wire(result)
