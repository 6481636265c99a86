"""
Decision resolver.

Turns approve/cancel calls from the approval UI into store operations and
runs the collaborator that carries out each approval. Every method returns
True on success; failures surface as ``RequestNotFoundError`` (stale or
already decided request) or ``CollaboratorFailure`` (signer, broadcaster or
registry raised).
"""
import logging
from typing import Any, Callable, Optional

from .collaborators import Broadcaster, NetworkRegistry, Signer, TokenRegistry
from .exceptions import PayloadShapeError
from .models import (
    AddEthereumChainRequest, ApproveSignAndSend, CustomEvmNetwork, SigningRequest, WatchAssetRequest,
)
from .store import PendingRequestStore, is_eth_signing

logger = logging.getLogger(__name__)

SEND_METHODS = frozenset({"eth_sendTransaction"})

LEGACY_PRICING_FIELDS = frozenset({"gasPrice"})
LEGACY_TX_TYPES = (0, 1, "0x0", "0x1", "0x00", "0x01")


def _is_send(request: SigningRequest) -> bool:
    return request.chainScope == "ethereum" and request.method in SEND_METHODS


class DecisionResolver:
    """
    Approve/cancel handlers for every request kind.

    Args:
        store: Pending requests
        signer: Signs approved signing requests
        broadcaster: Submits approved transactions; None disables sign-and-send
        networks: Receives approved network additions
        tokens: Receives approved watch-asset tokens
    """

    def __init__(
        self,
        store: PendingRequestStore,
        signer: Signer,
        networks: NetworkRegistry,
        tokens: TokenRegistry,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.store = store
        self.signer = signer
        self.broadcaster = broadcaster
        self.networks = networks
        self.tokens = tokens

    # network-add

    async def approve_network(self, request_id: str) -> bool:
        async def add(request: AddEthereumChainRequest) -> None:
            await self.networks.add_network(CustomEvmNetwork.from_add_request(request.network))
            # EIP-3085 resolves the page's promise with null
            return None

        await self.store.networks.approve(request_id, add)
        return True

    def cancel_network(self, request_id: str) -> bool:
        return self.store.networks.cancel(request_id)

    # watch-asset

    async def approve_watch_asset(self, request_id: str) -> bool:
        async def watch(request: WatchAssetRequest) -> bool:
            await self.tokens.add_token(request.token)
            return True

        await self.store.watch_assets.approve(request_id, watch)
        return True

    def cancel_watch_asset(self, request_id: str) -> bool:
        return self.store.watch_assets.cancel(request_id)

    # signing

    async def approve_sign(self, request_id: str, eth_only: bool = True) -> bool:
        """
        Sign a message or payload request.

        Raises:
            PayloadShapeError: If the request is a transaction, which must go
                through ``approve_sign_and_send``
        """
        predicate = is_eth_signing if eth_only else None
        self._check_shape(request_id, predicate, expect_send=False)
        await self.store.signing.approve(request_id, self.signer.sign, predicate)
        return True

    async def approve_sign_and_send(self, approval: ApproveSignAndSend) -> bool:
        """
        Sign a transaction with the UI's fee overrides and broadcast it.

        The fee values are passed through to the signer untouched. They
        replace any legacy ``gasPrice`` pricing the page supplied.
        """
        if self.broadcaster is None:
            raise PayloadShapeError("Sign-and-send is not available: no broadcaster configured")
        self._check_shape(approval.id, is_eth_signing, expect_send=True)
        fees = {
            "maxFeePerGas": approval.maxFeePerGas,
            "maxPriorityFeePerGas": approval.maxPriorityFeePerGas,
        }

        async def sign_and_send(request: SigningRequest) -> str:
            tx = {k: v for k, v in dict(request.payload).items() if k not in LEGACY_PRICING_FIELDS}
            if tx.get("type") in LEGACY_TX_TYPES:
                del tx["type"]
            with_fees = request.model_copy(update={"payload": {**tx, **fees}})
            signed = await self.signer.sign(with_fees)
            return await self.broadcaster.send_signed(signed, chain_id=request.ethChainId)

        await self.store.signing.approve(approval.id, sign_and_send, is_eth_signing)
        return True

    def cancel_signing(self, request_id: str, eth_only: bool = True) -> bool:
        return self.store.signing.cancel(request_id, is_eth_signing if eth_only else None)

    def _check_shape(
        self,
        request_id: str,
        predicate: Optional[Callable[[SigningRequest], bool]],
        expect_send: bool,
    ) -> None:
        request: Any = self.store.signing.find(request_id)
        if request is None or (predicate is not None and not predicate(request)):
            # absent: let the store raise RequestNotFoundError
            return
        if _is_send(request) and not expect_send:
            raise PayloadShapeError(f"Request {request_id} is a transaction; approve it with fee settings")
        if expect_send and not _is_send(request):
            raise PayloadShapeError(f"Request {request_id} is not a transaction")
