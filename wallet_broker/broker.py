"""
Broker - the process-wide request broker.

Owns the pending request store, the subscription hub, the channel registry
and the transport multiplexer, and wires them to the collaborators. One
``Broker`` lives for the lifetime of the wallet's background process:

    async with Broker(config, signer=signer, permissions=oracle) as broker:
        broker.connect(port)
        ...

Stopping the broker cancels every pending request.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from .channels import CallContext, ChannelName, ChannelRegistry, Handler
from .collaborators import (
    Broadcaster, DefaultMetadataResolver, InMemoryNetworkRegistry, InMemoryTokenRegistry,
    MetadataResolver, NetworkRegistry, PermissionOracle, RpcForwarder, Signer,
    StaticPermissionOracle, TokenRegistry,
)
from .config import BrokerConfig
from .exceptions import PayloadShapeError, RequestNotFoundError, UnsupportedMethodError
from .hub import SubscriptionHub
from .models import (
    AddEthereumChainParameter, ApproveSignAndSend, CustomEvmNetwork, EthRequest, EthRequestChainId,
    RequestIdOnly, SigningRequest, SubstrateSignPayload, WatchAssetBase, WatchAssetRequest, to_wire,
)
from .resolver import DecisionResolver
from .store import NetworkKey, PendingRequestStore, RequestKind, RequestQueue
from .transport import Multiplexer, Port

logger = logging.getLogger(__name__)

PROVIDER_TOPIC = "eth-provider"
NETWORKS_TOPIC = "eth-networks"

SIGN_METHODS = ("personal_sign", "eth_sign", "eth_signTypedData_v4")


def _pydantic_or_shape_error(model: Any, value: Any, method: str) -> Any:
    try:
        return model.model_validate(value)
    except ValueError as e:
        raise PayloadShapeError(f"Invalid params for {method}: {e}") from e


class Broker:
    """
    Request broker between untrusted callers and the approval UI.

    Args:
        config: Broker settings (defaults to ``BrokerConfig.from_env()``)
        signer: Signs approved requests
        permissions: Capability oracle for public channels
        broadcaster: Submits signed transactions
        rpc: Serves provider methods the broker does not handle itself
        networks: Receives approved network additions
        tokens: Receives approved watch-asset tokens
        metadata: Builds token descriptors for watch-asset requests
        network_key: Dedup key for network-add requests
    """

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        *,
        signer: Signer,
        permissions: Optional[PermissionOracle] = None,
        broadcaster: Optional[Broadcaster] = None,
        rpc: Optional[RpcForwarder] = None,
        networks: Optional[NetworkRegistry] = None,
        tokens: Optional[TokenRegistry] = None,
        metadata: Optional[MetadataResolver] = None,
        network_key: Optional[NetworkKey] = None,
    ):
        self.config = config or BrokerConfig.from_env()
        self.permissions = permissions or StaticPermissionOracle()
        self.rpc = rpc
        self.metadata = metadata or DefaultMetadataResolver()
        self.networks = networks or InMemoryNetworkRegistry(builtin_chain_ids=(self.config.default_chain_id,))
        self.tokens = tokens or InMemoryTokenRegistry()

        self.store = PendingRequestStore(network_key=network_key)
        self.hub = SubscriptionHub()
        self.resolver = DecisionResolver(
            self.store, signer=signer, networks=self.networks, tokens=self.tokens, broadcaster=broadcaster,
        )
        self.registry = ChannelRegistry(self._handlers(), self.permissions)
        self.multiplexer = Multiplexer(self.registry, self.hub)

        self.store.networks.add_listener(self._on_queue_changed)
        self.store.watch_assets.add_listener(self._on_queue_changed)
        self.store.signing.add_listener(self._on_queue_changed)
        self.networks.add_listener(lambda: self.hub.notify(NETWORKS_TOPIC))

        self.running = False

    # lifecycle

    async def start(self) -> "Broker":
        self.running = True
        logger.info(f"Broker started (chain {self.config.default_chain_id})")
        return self

    async def stop(self) -> None:
        """Cancel every pending request and disconnect every port. Idempotent."""
        self.running = False
        cancelled = self.store.teardown()
        await self.multiplexer.close()
        logger.info(f"Broker stopped, cancelled {cancelled} pending request(s)")

    async def __aenter__(self) -> "Broker":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def connect(self, port: Port) -> Port:
        self.multiplexer.attach(port)
        return port

    async def disconnect(self, port: Port) -> None:
        await self.multiplexer.detach(port)

    def emit_provider_message(self, message: Dict[str, Any]) -> int:
        """Push a provider event (chainChanged, accountsChanged...) to subscribed pages."""
        return self.hub.publish(PROVIDER_TOPIC, message)

    # store -> hub

    def _on_queue_changed(self, queue: RequestQueue[Any]) -> None:
        if queue is self.store.networks:
            self.hub.notify(RequestKind.NETWORK_ADD)
        elif queue is self.store.watch_assets:
            self.hub.notify(RequestKind.WATCH_ASSET)
        else:
            self.hub.notify(RequestKind.ETH_SIGNING)
            self.hub.notify(RequestKind.ANY_SIGNING)

    def _subscribe_kind(self, ctx: CallContext, kind: RequestKind) -> bool:
        self.hub.subscribe(kind, ctx.port, ctx.envelope_id, lambda: to_wire(self.store.list_all(kind)))
        return True

    def _handlers(self) -> Dict[ChannelName, Handler]:
        N = ChannelName
        return {
            N.ETH_REQUEST: self.eth_request,
            N.ETH_SUBSCRIBE: self.eth_subscribe,
            N.ETH_MIMIC_METAMASK: self.eth_mimic_metamask,
            N.SUBSTRATE_SIGN: self.substrate_sign,
            N.ETH_REQUEST_PRIVATE: self.eth_request_private,
            N.ETH_SIGNING_CANCEL: self.eth_signing_cancel,
            N.ETH_SIGNING_APPROVE_SIGN: self.eth_signing_approve_sign,
            N.ETH_SIGNING_APPROVE_SIGN_AND_SEND: self.eth_signing_approve_sign_and_send,
            N.ETH_SIGNING_SUBSCRIBE: self.eth_signing_subscribe,
            N.ETH_NETWORK_ADD_REQUESTS: self.eth_network_add_requests,
            N.ETH_NETWORK_ADD_APPROVE: self.eth_network_add_approve,
            N.ETH_NETWORK_ADD_CANCEL: self.eth_network_add_cancel,
            N.ETH_NETWORK_ADD_SUBSCRIBE: self.eth_network_add_subscribe,
            N.ETH_WATCH_ASSET_APPROVE: self.eth_watch_asset_approve,
            N.ETH_WATCH_ASSET_CANCEL: self.eth_watch_asset_cancel,
            N.ETH_WATCH_ASSET_SUBSCRIBE: self.eth_watch_asset_subscribe,
            N.ETH_WATCH_ASSET_SUBSCRIBE_BY_ID: self.eth_watch_asset_subscribe_by_id,
            N.ETH_NETWORKS_SUBSCRIBE: self.eth_networks_subscribe,
            N.ETH_NETWORKS_ADD_CUSTOM: self.eth_networks_add_custom,
            N.ETH_NETWORKS_REMOVE_CUSTOM: self.eth_networks_remove_custom,
            N.ETH_NETWORKS_CLEAR_CUSTOM: self.eth_networks_clear_custom,
            N.SIGNING_SUBSCRIBE: self.signing_subscribe,
            N.SIGNING_APPROVE_SIGN: self.signing_approve_sign,
            N.SIGNING_CANCEL: self.signing_cancel,
            N.UNSUBSCRIBE: self.unsubscribe,
        }

    # public channels

    async def eth_request(self, ctx: CallContext, request: EthRequest) -> Any:
        method = request.method
        params = request.param_list()
        logger.debug(f"{ctx.origin} -> {method}")

        if method == "eth_chainId":
            return hex(self.config.default_chain_id)
        if method == "wallet_addEthereumChain":
            return await self._add_ethereum_chain(ctx, params)
        if method == "wallet_watchAsset":
            return await self._watch_asset(ctx, request.params)
        if method == "eth_sendTransaction":
            return await self._send_transaction(ctx, params)
        if method in SIGN_METHODS:
            return await self._sign_message(ctx, method, params)
        if self.rpc is None:
            raise UnsupportedMethodError(method)
        return await self.rpc.request(method, request.params, chain_id=self.config.default_chain_id)

    async def _add_ethereum_chain(self, ctx: CallContext, params: List[Any]) -> Any:
        if not params:
            raise PayloadShapeError("wallet_addEthereumChain expects one parameter object")
        network = _pydantic_or_shape_error(AddEthereumChainParameter, params[0], "wallet_addEthereumChain")
        if self.networks.has_network(network.chain_id_int):
            return None
        _, outcome = self.store.add_network(ctx.origin, network)
        return await outcome

    async def _watch_asset(self, ctx: CallContext, params: Any) -> Any:
        if isinstance(params, list):
            params = params[0] if params else None
        base = _pydantic_or_shape_error(WatchAssetBase, params, "wallet_watchAsset")
        chain_id = self.config.default_chain_id
        # enqueue must not await, so resolve display metadata first
        token = await self.metadata.resolve_token(base, chain_id)
        _, outcome = self.store.add_watch_asset(
            ctx.origin,
            lambda request_id: WatchAssetRequest(id=request_id, url=ctx.origin, request=base, token=token),
        )
        return await outcome

    async def _send_transaction(self, ctx: CallContext, params: List[Any]) -> Any:
        tx = params[0] if params else None
        if not isinstance(tx, dict) or not tx.get("from"):
            raise PayloadShapeError("eth_sendTransaction expects a transaction object with 'from'")
        return await self._enqueue_signing(ctx, "ethereum", "eth_sendTransaction", tx["from"], tx)

    async def _sign_message(self, ctx: CallContext, method: str, params: List[Any]) -> Any:
        if len(params) < 2:
            raise PayloadShapeError(f"{method} expects two parameters")
        if method == "personal_sign":
            payload, account = params[0], params[1]
        else:
            account, payload = params[0], params[1]
        if method == "eth_signTypedData_v4" and isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise PayloadShapeError(f"Invalid typed data: {e}") from e
        if not isinstance(account, str):
            raise PayloadShapeError(f"{method} expects an account address")
        return await self._enqueue_signing(ctx, "ethereum", method, account, payload)

    async def _enqueue_signing(self, ctx: CallContext, scope: str, method: str, account: str, payload: Any) -> Any:
        chain_id = self.config.default_chain_id if scope == "ethereum" else None
        _, outcome = self.store.add_signing(
            ctx.origin,
            lambda request_id: SigningRequest(
                id=request_id, url=ctx.origin, chainScope=scope, method=method,
                account=account, payload=payload, ethChainId=chain_id,
            ),
        )
        return await outcome

    async def eth_subscribe(self, ctx: CallContext, _: None) -> bool:
        subscription = self.hub.subscribe(PROVIDER_TOPIC, ctx.port, ctx.envelope_id)
        subscription.push({"type": "connect", "data": {"chainId": hex(self.config.default_chain_id)}})
        return True

    async def eth_mimic_metamask(self, ctx: CallContext, _: None) -> bool:
        return self.config.mimic_metamask

    async def substrate_sign(self, ctx: CallContext, request: SubstrateSignPayload) -> Any:
        method = "signPayload" if request.type == "payload" else "signRaw"
        return await self._enqueue_signing(ctx, "substrate", method, request.address, request.payload)

    # private channels

    async def eth_request_private(self, ctx: CallContext, request: EthRequestChainId) -> Any:
        if self.rpc is None:
            raise UnsupportedMethodError(request.method)
        return await self.rpc.request(request.method, request.params, chain_id=request.chainId)

    async def eth_signing_cancel(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return self.resolver.cancel_signing(request.id)

    async def eth_signing_approve_sign(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return await self.resolver.approve_sign(request.id)

    async def eth_signing_approve_sign_and_send(self, ctx: CallContext, request: ApproveSignAndSend) -> bool:
        return await self.resolver.approve_sign_and_send(request)

    async def eth_signing_subscribe(self, ctx: CallContext, _: None) -> bool:
        return self._subscribe_kind(ctx, RequestKind.ETH_SIGNING)

    async def eth_network_add_requests(self, ctx: CallContext, _: None) -> List[Any]:
        return self.store.list_all(RequestKind.NETWORK_ADD)

    async def eth_network_add_approve(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return await self.resolver.approve_network(request.id)

    async def eth_network_add_cancel(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return self.resolver.cancel_network(request.id)

    async def eth_network_add_subscribe(self, ctx: CallContext, _: None) -> bool:
        return self._subscribe_kind(ctx, RequestKind.NETWORK_ADD)

    async def eth_watch_asset_approve(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return await self.resolver.approve_watch_asset(request.id)

    async def eth_watch_asset_cancel(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return self.resolver.cancel_watch_asset(request.id)

    async def eth_watch_asset_subscribe(self, ctx: CallContext, _: None) -> bool:
        return self._subscribe_kind(ctx, RequestKind.WATCH_ASSET)

    async def eth_watch_asset_subscribe_by_id(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        """Stream one watch-asset request; pushes None once it is resolved."""
        queue = self.store.watch_assets
        if request.id not in queue:
            raise RequestNotFoundError(request.id)
        self.hub.subscribe(
            RequestKind.WATCH_ASSET, ctx.port, ctx.envelope_id,
            lambda: to_wire(queue.find(request.id)),
        )
        return True

    async def eth_networks_subscribe(self, ctx: CallContext, _: None) -> bool:
        self.hub.subscribe(NETWORKS_TOPIC, ctx.port, ctx.envelope_id, lambda: True)
        return True

    async def eth_networks_add_custom(self, ctx: CallContext, network: CustomEvmNetwork) -> bool:
        return await self.networks.add_network(network)

    async def eth_networks_remove_custom(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        try:
            chain_id = int(request.id, 0)
        except ValueError:
            raise PayloadShapeError(f"Not a chain id: {request.id}") from None
        return await self.networks.remove_network(chain_id)

    async def eth_networks_clear_custom(self, ctx: CallContext, _: None) -> bool:
        return await self.networks.clear_networks()

    async def signing_subscribe(self, ctx: CallContext, _: None) -> bool:
        return self._subscribe_kind(ctx, RequestKind.ANY_SIGNING)

    async def signing_approve_sign(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return await self.resolver.approve_sign(request.id, eth_only=False)

    async def signing_cancel(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return self.resolver.cancel_signing(request.id, eth_only=False)

    async def unsubscribe(self, ctx: CallContext, request: RequestIdOnly) -> bool:
        return self.hub.unsubscribe(ctx.port, request.id)
