"""
One end of an RPC channel: routes inbound requests to the router and inbound
responses to the client.
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError

from filebridge.config import DEFAULT_RPC_TIMEOUT_MS
from filebridge.errors import InvalidRequestError, ParseError, RpcError
from filebridge.rpc.client import RpcClient, SendFn
from filebridge.rpc.protocol import (
    REQUEST_TYPE,
    RESPONSE_TYPE,
    RpcRequest,
    RpcResponse,
    response_envelope,
)
from filebridge.rpc.router import RpcRouter

logger = logging.getLogger(__name__)


class RpcEndpoint:
    def __init__(self, send: SendFn, router: RpcRouter, timeout_ms: int = DEFAULT_RPC_TIMEOUT_MS):
        self._send = send
        self.router = router
        self.client = RpcClient(send, timeout_ms=timeout_ms)
        self._in_flight: Set[asyncio.Task] = set()

    async def handle_message(self, message: Any) -> bool:
        """Handle one inbound message. Returns False for non-RPC messages."""
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except ValueError as e:
                await self._reply_error(None, ParseError(f"Parse error: {e}"))
                return True

        if not isinstance(message, dict):
            await self._reply_error(None, InvalidRequestError("Invalid request: message must be an object"))
            return True

        message_type = message.get("type")
        if message_type == REQUEST_TYPE:
            raw = message.get("request")
            try:
                request = RpcRequest.model_validate(raw)
            except ValidationError:
                request_id = raw.get("id") if isinstance(raw, dict) and isinstance(raw.get("id"), str) else None
                await self._reply_error(request_id, InvalidRequestError("Invalid request"))
                return True
            task = asyncio.create_task(self._serve(request))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            return True

        if message_type == RESPONSE_TYPE:
            try:
                response = RpcResponse.model_validate(message.get("response"))
            except ValidationError:
                logger.warning("Dropping malformed RPC response")
                return True
            self.client.handle_response(response)
            return True

        logger.debug(f"Ignoring non-RPC message of type {message_type!r}")
        return False

    async def request(self, method: str, params: Any = None, timeout_ms: Optional[int] = None) -> Any:
        return await self.client.request(method, params, timeout_ms)

    async def close(self):
        """Fail pending outbound calls and stop serving inbound ones."""
        self.client.cancel_all()
        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _serve(self, request: RpcRequest):
        response = await self.router.dispatch(request)
        await self._deliver(response_envelope(response))

    async def _reply_error(self, request_id: Optional[str], error: RpcError):
        logger.warning(error.message)
        response = RpcResponse(id=request_id, error=RpcRouter.error_body(error))
        await self._deliver(response_envelope(response))

    async def _deliver(self, envelope: Dict[str, Any]):
        try:
            sent = self._send(envelope)
            if inspect.isawaitable(sent):
                await sent
        except Exception as e:
            logger.warning(f"Could not deliver RPC response: {e}")
