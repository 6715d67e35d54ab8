"""
Error taxonomy shared by the RPC layer, adapters and the transfer queue.

Every exception raised on purpose carries the RPC error code it maps to, so the
router does not have to guess from the message text.
"""
import errno
import logging
from enum import IntEnum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class RpcErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    HOST_NOT_FOUND = -32001
    CREDENTIAL_NOT_FOUND = -32002
    CONNECTION_FAILED = -32003
    PERMISSION_DENIED = -32004
    FILE_NOT_FOUND = -32005
    OPERATION_FAILED = -32006


class RpcError(Exception):
    """Base error carrying an RPC error code and optional payload."""

    code: int = RpcErrorCode.OPERATION_FAILED

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.data = data

    def to_dict(self) -> dict:
        error = {"code": int(self.code), "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class ParseError(RpcError):
    code = RpcErrorCode.PARSE_ERROR


class InvalidRequestError(RpcError):
    code = RpcErrorCode.INVALID_REQUEST


class MethodNotFoundError(RpcError):
    code = RpcErrorCode.METHOD_NOT_FOUND


class InvalidParamsError(RpcError):
    code = RpcErrorCode.INVALID_PARAMS


class InternalError(RpcError):
    code = RpcErrorCode.INTERNAL_ERROR


class HostNotFoundError(RpcError):
    code = RpcErrorCode.HOST_NOT_FOUND


class CredentialNotFoundError(RpcError):
    code = RpcErrorCode.CREDENTIAL_NOT_FOUND


class ConnectionFailedError(RpcError):
    code = RpcErrorCode.CONNECTION_FAILED


class RpcTimeoutError(ConnectionFailedError):
    """No response arrived in time. Retryable, like a connection failure."""


class RequestCancelledError(RpcError):
    """The pending request was dropped by cancel_all()."""


class PermissionDeniedError(RpcError):
    code = RpcErrorCode.PERMISSION_DENIED


class EntryNotFoundError(RpcError):
    code = RpcErrorCode.FILE_NOT_FOUND


class OperationFailedError(RpcError):
    code = RpcErrorCode.OPERATION_FAILED


class PlatformUnsupportedError(OperationFailedError):
    pass


class TransferCancelledError(Exception):
    """Raised at a transfer checkpoint after the job was cancelled."""


_ERRNO_TO_ERROR = {
    errno.ENOENT: EntryNotFoundError,
    errno.ENOTDIR: EntryNotFoundError,
    errno.EACCES: PermissionDeniedError,
    errno.EPERM: PermissionDeniedError,
    errno.EROFS: PermissionDeniedError,
}


def wrap_os_error(exc: OSError, context: str) -> RpcError:
    """Turn an OSError into the typed error for its errno, keeping the original text."""
    error_cls = _ERRNO_TO_ERROR.get(exc.errno, OperationFailedError)
    detail = exc.strerror or str(exc)
    if exc.filename:
        detail = f"{detail}: '{exc.filename}'"
    return error_cls(f"{context}: {detail}")


def classify_exception(exc: BaseException) -> int:
    """Map an arbitrary exception to an RPC error code.

    Typed errors win, then errno, then pattern-matching on the message for
    anything raised by third-party code without a usable type.
    """
    if isinstance(exc, RpcError):
        return int(exc.code)
    if isinstance(exc, FileNotFoundError):
        return RpcErrorCode.FILE_NOT_FOUND
    if isinstance(exc, PermissionError):
        return RpcErrorCode.PERMISSION_DENIED
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return RpcErrorCode.CONNECTION_FAILED
    if isinstance(exc, OSError) and exc.errno in _ERRNO_TO_ERROR:
        return int(_ERRNO_TO_ERROR[exc.errno].code)

    message = str(exc).lower()
    if "not found" in message:
        if "host" in message:
            return RpcErrorCode.HOST_NOT_FOUND
        if "credential" in message:
            return RpcErrorCode.CREDENTIAL_NOT_FOUND
        if "file" in message or "no such" in message:
            return RpcErrorCode.FILE_NOT_FOUND
    if "no such file" in message:
        return RpcErrorCode.FILE_NOT_FOUND
    if "permission" in message or "denied" in message or "eacces" in message:
        return RpcErrorCode.PERMISSION_DENIED
    if "connect" in message or "connection" in message:
        return RpcErrorCode.CONNECTION_FAILED
    return RpcErrorCode.OPERATION_FAILED
