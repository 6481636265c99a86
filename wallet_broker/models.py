"""
Data models for the wallet broker.

Field names follow the wire format used by injected providers and the
approval UI (camelCase), so models round-trip through ``model_dump``
without aliasing.
"""
import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

HEX_QUANTITY = re.compile(r"^0x[0-9a-fA-F]+$")
DECIMAL_QUANTITY = re.compile(r"^[0-9]+$")
EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


class Envelope(BaseModel):
    """Inbound message: a channel name plus its payload, tagged with a caller id."""
    id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    origin: Optional[str] = None
    request: Any = None


class RequestIdOnly(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)


class ApproveSignAndSend(RequestIdOnly):
    """
    Approval of a transaction, with the fee overrides picked in the UI.

    Fees are wei amounts as decimal or 0x-prefixed hex strings.
    """
    maxFeePerGas: str
    maxPriorityFeePerGas: str

    @field_validator("maxFeePerGas", "maxPriorityFeePerGas")
    @classmethod
    def validate_fee(cls, v: str) -> str:
        if not (DECIMAL_QUANTITY.match(v) or HEX_QUANTITY.match(v)):
            raise ValueError("fee must be a decimal or 0x-prefixed hex wei amount")
        return v


class EthRequest(BaseModel):
    """An EIP-1193 ``request`` call from a page."""
    method: str = Field(min_length=1)
    params: Optional[Union[List[Any], Dict[str, Any]]] = None

    def param_list(self) -> List[Any]:
        if self.params is None:
            return []
        if isinstance(self.params, dict):
            return [self.params]
        return list(self.params)


class EthRequestChainId(EthRequest):
    chainId: int


class NativeCurrency(BaseModel):
    name: str
    symbol: str = Field(min_length=2, max_length=6)
    decimals: int = 18


class AddEthereumChainParameter(BaseModel):
    """EIP-3085 ``wallet_addEthereumChain`` parameters."""
    chainId: str
    chainName: str = Field(min_length=1)
    nativeCurrency: Optional[NativeCurrency] = None
    rpcUrls: List[str] = Field(min_length=1)
    blockExplorerUrls: Optional[List[str]] = None
    iconUrls: Optional[List[str]] = None

    @field_validator("chainId")
    @classmethod
    def validate_chain_id(cls, v: str) -> str:
        if not HEX_QUANTITY.match(v):
            raise ValueError("chainId must be a 0x-prefixed hex string")
        return v.lower()

    @property
    def chain_id_int(self) -> int:
        return int(self.chainId, 16)


class WatchAssetOptions(BaseModel):
    address: str
    symbol: str = Field(min_length=1, max_length=11)
    decimals: int = Field(ge=0, le=36)
    image: Optional[str] = None

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not EVM_ADDRESS.match(v):
            raise ValueError("address must be a 20-byte hex string")
        return v


class WatchAssetBase(BaseModel):
    """EIP-747 ``wallet_watchAsset`` parameters."""
    type: Literal["ERC20"]
    options: WatchAssetOptions


class EvmNetworkRef(BaseModel):
    id: int


class CustomErc20Token(BaseModel):
    """Token descriptor shown to the user while a watch-asset request pends."""
    id: str
    type: Literal["evm-erc20"] = "evm-erc20"
    isTestnet: bool = False
    symbol: str
    decimals: int
    logo: Optional[str] = None
    contractAddress: str
    evmNetwork: EvmNetworkRef
    isCustom: bool = True


class EthereumRpc(BaseModel):
    url: str
    isHealthy: bool = True


class CustomEvmNetwork(BaseModel):
    id: int
    isTestnet: bool = False
    sortIndex: Optional[int] = None
    name: Optional[str] = None
    nativeToken: Optional[Dict[str, str]] = None
    explorerUrl: Optional[str] = None
    rpcs: List[EthereumRpc] = Field(min_length=1)
    isHealthy: bool = True
    isCustom: Literal[True] = True
    explorerUrls: List[str] = Field(default_factory=list)
    iconUrls: List[str] = Field(default_factory=list)

    @classmethod
    def from_add_request(cls, network: AddEthereumChainParameter) -> "CustomEvmNetwork":
        explorers = network.blockExplorerUrls or []
        return cls(
            id=network.chain_id_int,
            name=network.chainName,
            rpcs=[EthereumRpc(url=url) for url in network.rpcUrls],
            explorerUrl=explorers[0] if explorers else None,
            explorerUrls=explorers,
            iconUrls=network.iconUrls or [],
            nativeToken=(
                {"symbol": network.nativeCurrency.symbol, "name": network.nativeCurrency.name}
                if network.nativeCurrency else None
            ),
        )


class AddEthereumChainRequest(BaseModel):
    id: str
    idStr: str
    url: str
    network: AddEthereumChainParameter


class WatchAssetRequest(BaseModel):
    id: str
    url: str
    request: WatchAssetBase
    token: CustomErc20Token


ChainScope = Literal["ethereum", "substrate"]


class SigningRequest(BaseModel):
    """
    A request waiting for a signature.

    ``payload`` is opaque to the broker: a transaction dict for
    ``eth_sendTransaction``, a message for ``personal_sign``, typed data for
    ``eth_signTypedData_v4``, or a substrate extrinsic payload.
    """
    id: str
    url: str
    chainScope: ChainScope
    method: str
    account: str
    payload: Any
    ethChainId: Optional[int] = None


class SubstrateSignPayload(BaseModel):
    """Signing request from a substrate (polkadot.js style) page."""
    address: str = Field(min_length=1)
    type: Literal["payload", "bytes"] = "payload"
    payload: Union[Dict[str, Any], str]


def to_wire(value: Any) -> Any:
    """Convert models (possibly nested in lists/dicts) into JSON-ready values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    if isinstance(value, dict):
        return {k: to_wire(v) for k, v in value.items()}
    return value
