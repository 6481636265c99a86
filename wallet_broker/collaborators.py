"""
Collaborators the broker calls out to.

The broker decides nothing about trust, keys or networks itself. It asks a
permission oracle whether an origin may use a channel, hands approved
payloads to a signer and a broadcaster, and applies approved network and
token additions through registries. Each collaborator is a Protocol; the
classes below are the default implementations.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from web3 import Web3

from .exceptions import BrokerError, PayloadShapeError, RpcError, UnsupportedMethodError
from .models import CustomErc20Token, CustomEvmNetwork, EvmNetworkRef, SigningRequest, WatchAssetBase

logger = logging.getLogger(__name__)


class PermissionOracle(Protocol):
    """Decides whether an origin holds a capability."""

    async def has_capability(self, origin: str, capability: str) -> bool:
        ...


class Signer(Protocol):
    """Produces signatures for approved signing requests."""

    async def sign(self, request: SigningRequest) -> Any:
        """Return the signature, or the raw signed transaction for eth_sendTransaction."""
        ...


class Broadcaster(Protocol):
    """Submits signed transactions to the network."""

    async def send_signed(self, signed: Any, chain_id: Optional[int] = None) -> str:
        """Return the transaction hash."""
        ...


class RpcForwarder(Protocol):
    """Serves read-only provider methods the broker does not handle itself."""

    async def request(self, method: str, params: Any, chain_id: Optional[int] = None) -> Any:
        ...


class MetadataResolver(Protocol):
    """Enriches a watch-asset request with a displayable token descriptor."""

    async def resolve_token(self, request: WatchAssetBase, chain_id: int) -> CustomErc20Token:
        ...


class NetworkRegistry(Protocol):
    """Holds the user's custom EVM networks."""

    def has_network(self, chain_id: int) -> bool:
        ...

    async def add_network(self, network: CustomEvmNetwork) -> bool:
        ...

    async def remove_network(self, chain_id: int) -> bool:
        ...

    async def clear_networks(self) -> bool:
        ...

    def add_listener(self, listener: Callable[[], None]) -> None:
        ...


class TokenRegistry(Protocol):
    """Holds the user's watched tokens."""

    async def add_token(self, token: CustomErc20Token) -> bool:
        ...


class StaticPermissionOracle:
    """
    In-memory capability grants.

    Args:
        grants: Mapping of origin to the capabilities it holds
    """

    def __init__(self, grants: Optional[Dict[str, Iterable[str]]] = None):
        self._grants: Dict[str, Set[str]] = {}
        for origin, capabilities in (grants or {}).items():
            self.grant(origin, *capabilities)

    @staticmethod
    def _normalize(origin: str) -> str:
        return origin.rstrip("/")

    def grant(self, origin: str, *capabilities: str) -> None:
        self._grants.setdefault(self._normalize(origin), set()).update(capabilities)

    def revoke(self, origin: str, *capabilities: str) -> None:
        held = self._grants.get(self._normalize(origin))
        if held is None:
            return
        if capabilities:
            held.difference_update(capabilities)
        else:
            held.clear()

    async def has_capability(self, origin: str, capability: str) -> bool:
        return capability in self._grants.get(self._normalize(origin), ())


def _to_hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


QUANTITY_FIELDS = (
    "value", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "nonce", "chainId", "type",
)


def _to_quantity(field_name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise PayloadShapeError(f"Transaction field {field_name} must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            if value[:2].lower() == "0x":
                return int(value, 16)
            return int(value)
        except ValueError:
            pass
    raise PayloadShapeError(f"Transaction field {field_name} is not a valid quantity: {value!r}")


def normalize_transaction(payload: Any) -> Dict[str, Any]:
    """
    Turn an ``eth_sendTransaction`` payload into fields ``eth_account`` accepts.

    Quantities given as decimal or 0x-hex strings become ints, ``input`` is
    read as ``data``, and legacy ``gasPrice`` is dropped when EIP-1559 fees
    are present.

    Raises:
        PayloadShapeError: If the payload is not an object or a quantity
            does not parse
    """
    if not isinstance(payload, dict):
        raise PayloadShapeError("Transaction payload must be an object")
    tx: Dict[str, Any] = {k: v for k, v in payload.items() if k != "from" and v is not None}
    if "input" in tx:
        data = tx.pop("input")
        tx.setdefault("data", data)
    for name in QUANTITY_FIELDS:
        if name in tx:
            tx[name] = _to_quantity(name, tx[name])
    if "maxFeePerGas" in tx or "maxPriorityFeePerGas" in tx:
        tx.pop("gasPrice", None)
        if tx.get("type") in (0, 1):
            del tx["type"]
    return tx


class LocalAccountSigner:
    """
    Signs ethereum requests with a local private key via ``eth_account``.

    Args:
        private_key: Hex-encoded secp256k1 private key
        w3: Optional Web3 instance used to fill in missing nonce and gas
    """

    def __init__(self, private_key: str, w3: Optional[Web3] = None):
        self.account = Account.from_key(private_key)
        self.w3 = w3

    @property
    def address(self) -> str:
        return self.account.address

    async def sign(self, request: SigningRequest) -> Any:
        if request.chainScope != "ethereum":
            raise UnsupportedMethodError(f"{request.chainScope}:{request.method}")
        if request.account.lower() != self.address.lower():
            raise BrokerError(f"Signer does not hold account {request.account}")

        if request.method == "eth_sendTransaction":
            return await self._sign_transaction(request)
        if request.method in ("personal_sign", "eth_sign"):
            message = request.payload
            if isinstance(message, str) and message.startswith("0x"):
                signable = encode_defunct(hexstr=message)
            else:
                signable = encode_defunct(text=str(message))
        elif request.method == "eth_signTypedData_v4":
            data = request.payload
            if isinstance(data, str):
                data = json.loads(data)
            signable = encode_typed_data(full_message=data)
        else:
            raise UnsupportedMethodError(request.method)

        signed = self.account.sign_message(signable)
        logger.debug(f"Signed {request.method} request {request.id}")
        return _to_hex(signed.signature)

    async def _sign_transaction(self, request: SigningRequest) -> str:
        tx = normalize_transaction(request.payload)
        if "chainId" not in tx and request.ethChainId is not None:
            tx["chainId"] = request.ethChainId
        if self.w3 is not None:
            if "nonce" not in tx:
                tx["nonce"] = await asyncio.to_thread(
                    self.w3.eth.get_transaction_count, self.address, "pending"
                )
            if "gas" not in tx:
                tx["gas"] = await asyncio.to_thread(
                    self.w3.eth.estimate_gas, {**tx, "from": self.address}
                )
        signed = self.account.sign_transaction(tx)
        logger.debug(f"Signed transaction for request {request.id}")
        return _to_hex(signed.raw_transaction)


class Web3Broadcaster:
    """
    Broadcasts raw transactions through a Web3 HTTP provider.

    Web3 calls block, so they run in a worker thread.
    """

    def __init__(self, rpc_url: Optional[str] = None, w3: Optional[Web3] = None):
        if w3 is None and not rpc_url:
            raise ValueError("Either rpc_url or w3 must be provided")
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))

    async def send_signed(self, signed: Any, chain_id: Optional[int] = None) -> str:
        tx_hash = await asyncio.to_thread(self.w3.eth.send_raw_transaction, signed)
        result = tx_hash if isinstance(tx_hash, str) else _to_hex(tx_hash)
        logger.info(f"Transaction sent: {result}")
        return result


class Web3RpcForwarder:
    """Forwards provider calls to a JSON-RPC node through Web3."""

    def __init__(self, rpc_url: Optional[str] = None, w3: Optional[Web3] = None):
        if w3 is None and not rpc_url:
            raise ValueError("Either rpc_url or w3 must be provided")
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))

    async def request(self, method: str, params: Any, chain_id: Optional[int] = None) -> Any:
        response = await asyncio.to_thread(self.w3.provider.make_request, method, params or [])
        if response.get("error"):
            error = response["error"]
            raise RpcError(error.get("message", "RPC error"), rpc_code=error.get("code", -32603))
        return response.get("result")


class DefaultMetadataResolver:
    """Builds the token descriptor straight from the watch-asset parameters."""

    def __init__(self, testnet_chain_ids: Iterable[int] = ()):
        self.testnet_chain_ids = set(testnet_chain_ids)

    async def resolve_token(self, request: WatchAssetBase, chain_id: int) -> CustomErc20Token:
        options = request.options
        return CustomErc20Token(
            id=f"{chain_id}-evm-erc20-{options.address.lower()}",
            isTestnet=chain_id in self.testnet_chain_ids,
            symbol=options.symbol,
            decimals=options.decimals,
            logo=options.image,
            contractAddress=options.address,
            evmNetwork=EvmNetworkRef(id=chain_id),
        )


class InMemoryNetworkRegistry:
    """Custom networks kept for the lifetime of the process."""

    def __init__(self, builtin_chain_ids: Iterable[int] = (1,)):
        self.builtin_chain_ids = set(builtin_chain_ids)
        self.networks: Dict[int, CustomEvmNetwork] = {}
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    def has_network(self, chain_id: int) -> bool:
        return chain_id in self.builtin_chain_ids or chain_id in self.networks

    async def add_network(self, network: CustomEvmNetwork) -> bool:
        self.networks[network.id] = network
        logger.info(f"Added custom network {network.id} ({network.name})")
        self._changed()
        return True

    async def remove_network(self, chain_id: int) -> bool:
        if self.networks.pop(chain_id, None) is None:
            return False
        self._changed()
        return True

    async def clear_networks(self) -> bool:
        self.networks.clear()
        self._changed()
        return True


class InMemoryTokenRegistry:
    """Watched tokens kept for the lifetime of the process."""

    def __init__(self):
        self.tokens: Dict[str, CustomErc20Token] = {}

    async def add_token(self, token: CustomErc20Token) -> bool:
        self.tokens[token.id] = token
        logger.info(f"Watching token {token.symbol} ({token.id})")
        return True
