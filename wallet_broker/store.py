"""
Pending request store.

Each request kind keeps an ordered (oldest first) queue of requests awaiting a
user decision. Every enqueued request is resolved exactly once: by approve, by
cancel, or by teardown when the broker stops. Resolution removes the entry
before any collaborator is awaited, so a second decision on the same id always
fails with ``RequestNotFoundError``.

All mutating methods are synchronous; the only suspension point is the
collaborator call inside ``approve``, which happens after removal.
"""
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar
)

from .exceptions import CollaboratorFailure, RequestNotFoundError, UserRejectedError
from .ids import new_request_id, now_ms
from .models import AddEthereumChainParameter, AddEthereumChainRequest, SigningRequest, WatchAssetRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

SHUTDOWN_MESSAGE = "Request cancelled: wallet is shutting down"


class RequestKind(str, Enum):
    """Request collections observable through the subscription hub."""
    NETWORK_ADD = "network-add"
    WATCH_ASSET = "watch-asset"
    ETH_SIGNING = "eth-signing"
    ANY_SIGNING = "any-signing"


@dataclass(frozen=True)
class PendingRequest(Generic[T]):
    """A request owned by a queue until it is resolved."""
    id: str
    url: str
    payload: T
    created_at: int


@dataclass
class _Entry(Generic[T]):
    request: PendingRequest[T]
    dedup_key: Optional[Hashable] = None
    waiters: List["asyncio.Future[Any]"] = field(default_factory=list)


Listener = Callable[["RequestQueue[Any]"], None]


class RequestQueue(Generic[T]):
    """
    Ordered collection of pending requests of one kind.

    Args:
        name: Label used in log messages
    """

    def __init__(self, name: str):
        self.name = name
        self._entries: "OrderedDict[str, _Entry[T]]" = OrderedDict()
        self._by_dedup_key: Dict[Hashable, str] = {}
        self._listeners: List[Listener] = []
        self._closed = False

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(
        self,
        url: str,
        build: Callable[[str], T],
        dedup_key: Optional[Hashable] = None,
    ) -> Tuple[str, "asyncio.Future[Any]"]:
        """
        Add a request, or join an equivalent unresolved one.

        Args:
            url: Origin URL of the caller
            build: Builds the stored payload from the newly allocated id
            dedup_key: When set and an unresolved request carries the same key,
                no new entry is created; the caller waits on the existing one

        Returns:
            Tuple of (request id, future resolved with the decision outcome)

        Raises:
            ValueError: If url is empty
            UserRejectedError: If the queue has been torn down
        """
        if not url:
            raise ValueError("A pending request must carry the caller's origin URL")
        if self._closed:
            raise UserRejectedError(SHUTDOWN_MESSAGE)

        future = asyncio.get_running_loop().create_future()

        if dedup_key is not None and dedup_key in self._by_dedup_key:
            existing_id = self._by_dedup_key[dedup_key]
            self._entries[existing_id].waiters.append(future)
            logger.debug(f"{self.name}: joined pending request {existing_id} for {dedup_key!r}")
            return existing_id, future

        request_id = new_request_id()
        request = PendingRequest(id=request_id, url=url, payload=build(request_id), created_at=now_ms())
        self._entries[request_id] = _Entry(request=request, dedup_key=dedup_key, waiters=[future])
        if dedup_key is not None:
            self._by_dedup_key[dedup_key] = request_id

        logger.info(f"{self.name}: queued request {request_id} from {url}")
        self._changed()
        return request_id, future

    def list_all(self) -> List[T]:
        """Payloads of all pending requests, oldest first."""
        return [entry.request.payload for entry in self._entries.values()]

    def pending(self) -> List[PendingRequest[T]]:
        return [entry.request for entry in self._entries.values()]

    def get_by_id(self, request_id: str) -> T:
        """
        Raises:
            RequestNotFoundError: If no pending request has this id
        """
        entry = self._entries.get(request_id)
        if entry is None:
            raise RequestNotFoundError(request_id)
        return entry.request.payload

    def find(self, request_id: str) -> Optional[T]:
        entry = self._entries.get(request_id)
        return entry.request.payload if entry else None

    def _take(self, request_id: str, predicate: Optional[Callable[[T], bool]] = None) -> _Entry[T]:
        entry = self._entries.get(request_id)
        if entry is None or (predicate is not None and not predicate(entry.request.payload)):
            raise RequestNotFoundError(request_id)
        del self._entries[request_id]
        if entry.dedup_key is not None:
            self._by_dedup_key.pop(entry.dedup_key, None)
        self._changed()
        return entry

    async def approve(
        self,
        request_id: str,
        action: Callable[[T], Awaitable[R]],
        predicate: Optional[Callable[[T], bool]] = None,
    ) -> R:
        """
        Remove a request and run the collaborator that carries out the approval.

        Every caller waiting on the request gets the collaborator's result. If
        the collaborator fails, they get its exception unchanged and the
        approver gets ``CollaboratorFailure``. The request is not requeued.

        Args:
            request_id: Id of the request to approve
            action: Coroutine function invoked with the stored payload
            predicate: Extra filter; a request failing it counts as absent

        Returns:
            The collaborator's result

        Raises:
            RequestNotFoundError: If the request is absent or already resolved
            CollaboratorFailure: If the collaborator raised
        """
        entry = self._take(request_id, predicate)
        logger.info(f"{self.name}: approving request {request_id}")
        try:
            result = await action(entry.request.payload)
        except asyncio.CancelledError:
            self._settle(entry, error=CollaboratorFailure("Approval was interrupted"))
            raise
        except Exception as e:
            logger.error(f"{self.name}: collaborator failed for request {request_id}: {e}")
            self._settle(entry, error=e)
            if isinstance(e, CollaboratorFailure):
                raise
            raise CollaboratorFailure(str(e) or type(e).__name__, cause=e) from e

        self._settle(entry, result=result)
        return result

    def cancel(
        self,
        request_id: str,
        predicate: Optional[Callable[[T], bool]] = None,
    ) -> bool:
        """
        Remove a request and reject its callers with ``UserRejectedError``.

        Raises:
            RequestNotFoundError: If the request is absent or already resolved
        """
        entry = self._take(request_id, predicate)
        logger.info(f"{self.name}: request {request_id} rejected by user")
        self._settle(entry, error=UserRejectedError())
        return True

    def teardown(self) -> int:
        """
        Reject every pending request and refuse new ones.

        Returns:
            Number of requests that were cancelled
        """
        self._closed = True
        entries = list(self._entries.values())
        self._entries.clear()
        self._by_dedup_key.clear()
        for entry in entries:
            self._settle(entry, error=UserRejectedError(SHUTDOWN_MESSAGE))
        if entries:
            logger.info(f"{self.name}: cancelled {len(entries)} pending request(s) on teardown")
            self._changed()
        return len(entries)

    @staticmethod
    def _settle(entry: _Entry[Any], result: Any = None, error: Optional[BaseException] = None) -> None:
        for waiter in entry.waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)


def default_network_id_str(url: str, network: AddEthereumChainParameter) -> str:
    """Dedup key for network-add requests: the decimal chain id."""
    return str(network.chain_id_int)


NetworkKey = Callable[[str, AddEthereumChainParameter], Hashable]


class PendingRequestStore:
    """
    The broker's pending requests, one queue per kind.

    Signing requests of every ledger family share one queue; the
    ``ETH_SIGNING`` view is the ethereum subset of ``ANY_SIGNING``.

    Args:
        network_key: Dedup key function for network-add requests
    """

    def __init__(self, network_key: Optional[NetworkKey] = None):
        self.network_key = network_key or default_network_id_str
        self.networks: RequestQueue[AddEthereumChainRequest] = RequestQueue("network-add")
        self.watch_assets: RequestQueue[WatchAssetRequest] = RequestQueue("watch-asset")
        self.signing: RequestQueue[SigningRequest] = RequestQueue("signing")

    def add_network(
        self, url: str, network: AddEthereumChainParameter
    ) -> Tuple[str, "asyncio.Future[Any]"]:
        id_str = str(self.network_key(url, network))
        return self.networks.enqueue(
            url,
            lambda request_id: AddEthereumChainRequest(id=request_id, idStr=id_str, url=url, network=network),
            dedup_key=id_str,
        )

    def add_watch_asset(
        self, url: str, build: Callable[[str], WatchAssetRequest]
    ) -> Tuple[str, "asyncio.Future[Any]"]:
        return self.watch_assets.enqueue(url, build)

    def add_signing(
        self, url: str, build: Callable[[str], SigningRequest]
    ) -> Tuple[str, "asyncio.Future[Any]"]:
        return self.signing.enqueue(url, build)

    def queue_for(self, kind: RequestKind) -> RequestQueue[Any]:
        if kind is RequestKind.NETWORK_ADD:
            return self.networks
        if kind is RequestKind.WATCH_ASSET:
            return self.watch_assets
        return self.signing

    def list_all(self, kind: RequestKind) -> List[Any]:
        items = self.queue_for(kind).list_all()
        if kind is RequestKind.ETH_SIGNING:
            return [item for item in items if is_eth_signing(item)]
        return items

    def teardown(self) -> int:
        return sum(q.teardown() for q in (self.networks, self.watch_assets, self.signing))


def is_eth_signing(request: SigningRequest) -> bool:
    return request.chainScope == "ethereum"
