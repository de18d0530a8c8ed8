"""
Error taxonomy shared by the transport, provider, tool and orchestration layers.

Every failure the backend reports to a client is one of these types. Kinds are
enums whose values are the names used on the wire.
"""

from enum import Enum
from typing import Any, Optional


class KestrelError(Exception):
    """Base class for all backend errors."""

    def to_dict(self) -> dict:
        return {"type": type(self).__name__, "message": str(self)}


class BackendConnectionError(KestrelError):
    """Transport or provider endpoint unavailable."""


class ProviderErrorKind(Enum):
    RATE_LIMITED = "rate_limited"
    AUTH_INVALID = "auth_invalid"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"
    UNSUPPORTED_TOOL_CALL = "unsupported_tool_call"


_RETRYABLE_PROVIDER_KINDS = {ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.NETWORK}


class ProviderError(KestrelError):
    def __init__(self, kind: ProviderErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_PROVIDER_KINDS

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["kind"] = self.kind.value
        if self.status_code is not None:
            d["status_code"] = self.status_code
        return d


class ToolErrorKind(Enum):
    TIMEOUT = "timeout"
    EXECUTION_FAILURE = "execution_failure"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"


class ToolError(KestrelError):
    def __init__(self, kind: ToolErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["kind"] = self.kind.value
        return d


class ProtocolError(KestrelError):
    """Malformed call or params. Reported to the caller of that call only."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    BUSY = -32000
    BACKEND_UNAVAILABLE = -32001
    INTERNAL_ERROR = -32603

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data

    def to_rpc_error(self) -> dict:
        err = {"code": self.code, "message": str(self)}
        if self.data is not None:
            err["data"] = self.data
        return err


class LoopLimitExceeded(KestrelError):
    def __init__(self, rounds: int):
        super().__init__(f"loop limit exceeded after {rounds} tool-call rounds")
        self.rounds = rounds


class OperationCancelled(KestrelError):
    """Raised at a suspension point after its cancellation token fired."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason
