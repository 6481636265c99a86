"""
Wallet request broker.

Mediates between untrusted callers (pages, dApps, air-gapped signers) and the
wallet's trusted approval UI: queues network-add, watch-asset and signing
requests, streams them to subscribed UI instances, and resolves each one
exactly once.
"""
from .broker import Broker
from .channels import CATALOGUE, Capability, ChannelName, ChannelRegistry
from .collaborators import (
    DefaultMetadataResolver, InMemoryNetworkRegistry, InMemoryTokenRegistry, LocalAccountSigner,
    StaticPermissionOracle, Web3Broadcaster, Web3RpcForwarder,
)
from .config import BrokerConfig
from .exceptions import (
    BrokerError, CollaboratorFailure, ErrorCode, OriginNotPermittedError, PayloadShapeError,
    RequestNotFoundError, RpcError, UnknownChannelError, UnsupportedMethodError, UserRejectedError,
)
from .hub import Subscription, SubscriptionHub
from .store import PendingRequest, PendingRequestStore, RequestKind, RequestQueue
from .transport import Multiplexer, Port, QueuePort
from .version import __version__

__all__ = [
    "Broker",
    "BrokerConfig",
    "CATALOGUE",
    "Capability",
    "ChannelName",
    "ChannelRegistry",
    "DefaultMetadataResolver",
    "InMemoryNetworkRegistry",
    "InMemoryTokenRegistry",
    "LocalAccountSigner",
    "StaticPermissionOracle",
    "Web3Broadcaster",
    "Web3RpcForwarder",
    "BrokerError",
    "CollaboratorFailure",
    "ErrorCode",
    "OriginNotPermittedError",
    "PayloadShapeError",
    "RequestNotFoundError",
    "RpcError",
    "UnknownChannelError",
    "UnsupportedMethodError",
    "UserRejectedError",
    "Subscription",
    "SubscriptionHub",
    "PendingRequest",
    "PendingRequestStore",
    "RequestKind",
    "RequestQueue",
    "Multiplexer",
    "Port",
    "QueuePort",
    "__version__",
]
