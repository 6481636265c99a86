"""
Exceptions for the wallet broker.

Every error that crosses the transport boundary carries an ``ErrorCode`` so the
approval UI can tell a stale request apart from a failed signer.
"""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """
    Error codes sent to callers alongside the error message.
    """
    UNKNOWN_CHANNEL = "UNKNOWN_CHANNEL"
    PAYLOAD_SHAPE = "PAYLOAD_SHAPE"
    ORIGIN_NOT_PERMITTED = "ORIGIN_NOT_PERMITTED"
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    COLLABORATOR_FAILURE = "COLLABORATOR_FAILURE"
    USER_REJECTED = "USER_REJECTED"
    UNSUPPORTED_METHOD = "UNSUPPORTED_METHOD"
    INTERNAL = "INTERNAL"


class BrokerError(Exception):
    """Base exception for broker errors."""
    error_code: ErrorCode = ErrorCode.INTERNAL
    # EIP-1193 provider error code, used when the error is sent to a page
    rpc_code: int = -32603


class UnknownChannelError(BrokerError):
    """Raised when an envelope names a channel missing from the catalogue."""
    error_code = ErrorCode.UNKNOWN_CHANNEL
    rpc_code = -32601

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Unknown channel: {channel}")


class PayloadShapeError(BrokerError):
    """Raised when a payload does not match the channel's declared schema."""
    error_code = ErrorCode.PAYLOAD_SHAPE
    rpc_code = -32602

    def __init__(self, message: str, channel: Optional[str] = None):
        self.channel = channel
        super().__init__(message)


class OriginNotPermittedError(BrokerError):
    """Raised when a caller's origin lacks the capability a channel requires."""
    error_code = ErrorCode.ORIGIN_NOT_PERMITTED
    rpc_code = 4100

    def __init__(self, origin: str, capability: str):
        self.origin = origin
        self.capability = capability
        super().__init__(f"Origin {origin} is not permitted to use {capability}")


class RequestNotFoundError(BrokerError):
    """
    Raised when an approve/cancel targets a request that no longer exists.

    This is a legitimate race outcome (two windows clicking the same button),
    not a bug.
    """
    error_code = ErrorCode.REQUEST_NOT_FOUND

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request {request_id} no longer exists")


class CollaboratorFailure(BrokerError):
    """Raised to the approver when the signer or broadcaster fails."""
    error_code = ErrorCode.COLLABORATOR_FAILURE

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class UserRejectedError(BrokerError):
    """Delivered to a requester whose request was cancelled."""
    error_code = ErrorCode.USER_REJECTED
    rpc_code = 4001

    def __init__(self, message: str = "User rejected the request"):
        super().__init__(message)


class UnsupportedMethodError(BrokerError):
    """Raised for provider methods the broker cannot serve."""
    error_code = ErrorCode.UNSUPPORTED_METHOD
    rpc_code = 4200

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Method not supported: {method}")


class RpcError(BrokerError):
    """Error returned by the upstream JSON-RPC node, passed through to the page."""

    def __init__(self, message: str, rpc_code: int = -32603):
        self.rpc_code = rpc_code
        super().__init__(message)
