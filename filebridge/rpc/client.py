"""
Calling side of the request correlator.
"""
import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from filebridge.config import DEFAULT_RPC_TIMEOUT_MS
from filebridge.errors import RequestCancelledError, RpcError, RpcTimeoutError
from filebridge.rpc.protocol import RpcRequest, RpcResponse, request_envelope

logger = logging.getLogger(__name__)

SendFn = Callable[[Dict[str, Any]], Any]


@dataclass
class _PendingRequest:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class RpcClient:
    """Turns a one-way message channel into awaitable calls.

    Each request gets a fresh id and a pending entry holding its future and
    timeout timer. Whichever comes first (response, timeout, cancel_all)
    settles the future and removes the entry; anything arriving later for the
    same id is dropped as unknown.
    """

    def __init__(self, send: SendFn, timeout_ms: int = DEFAULT_RPC_TIMEOUT_MS):
        self._send = send
        self.timeout_ms = timeout_ms
        self._pending: Dict[str, _PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def request(self, method: str, params: Any = None, timeout_ms: Optional[int] = None) -> Any:
        loop = asyncio.get_running_loop()
        request_id = str(uuid.uuid4())
        effective_timeout = timeout_ms if timeout_ms is not None else self.timeout_ms

        future = loop.create_future()
        timer = loop.call_later(effective_timeout / 1000, self._expire, request_id, effective_timeout)
        self._pending[request_id] = _PendingRequest(method=method, future=future, timer=timer)

        try:
            sent = self._send(request_envelope(RpcRequest(id=request_id, method=method, params=params)))
            if inspect.isawaitable(sent):
                await sent
        except Exception:
            self._discard(request_id)
            raise

        try:
            return await future
        except asyncio.CancelledError:
            self._discard(request_id)
            raise

    def handle_response(self, response: RpcResponse):
        pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.warning(f"Received response for unknown request: {response.id}")
            return
        pending.timer.cancel()
        if pending.future.done():
            return
        if response.error is not None:
            pending.future.set_exception(RpcError(
                response.error.message,
                code=response.error.code,
                data=response.error.data,
            ))
        else:
            pending.future.set_result(response.result)

    def cancel_all(self):
        if self._pending:
            logger.info(f"Cancelling {len(self._pending)} pending RPC request(s)")
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(RequestCancelledError("Request cancelled"))

    def _expire(self, request_id: str, timeout_ms: int):
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning(f"RPC request timed out after {timeout_ms}ms: {pending.method}")
        pending.future.set_exception(
            RpcTimeoutError(f"RPC request timeout after {timeout_ms}ms: {pending.method}")
        )

    def _discard(self, request_id: str):
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()
