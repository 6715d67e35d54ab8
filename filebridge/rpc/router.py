"""
Receiving side of the request correlator: method registry and dispatch.
"""
import inspect
import logging
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

from pydantic import BaseModel, ValidationError

from filebridge.errors import (
    InvalidParamsError,
    MethodNotFoundError,
    RpcError,
    classify_exception,
)
from filebridge.rpc.protocol import RpcErrorBody, RpcMethod, RpcRequest, RpcResponse

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


@dataclass
class _Route:
    handler: Handler
    params_model: Optional[Type[BaseModel]] = None


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"]) or "params"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


class RpcRouter:
    """Maps RpcMethod members to handlers and turns every outcome into a response.

    A handler gets one argument: its params model instance when one was
    registered, the raw params otherwise. Whatever it raises comes back as an
    error response; dispatch() itself never raises.
    """

    def __init__(self):
        self._routes: Dict[RpcMethod, _Route] = {}

    def register(self, method: RpcMethod, handler: Handler, params_model: Optional[Type[BaseModel]] = None):
        if not isinstance(method, RpcMethod):
            raise TypeError(f"Not an RPC method: {method!r}")
        if not callable(handler):
            raise TypeError(f"Handler for {method.value} is not callable")
        if method in self._routes:
            raise ValueError(f"Handler already registered for {method.value}")
        self._routes[method] = _Route(handler=handler, params_model=params_model)

    def method(self, method: RpcMethod, params_model: Optional[Type[BaseModel]] = None):
        """Decorator form of register()"""
        def decorator(handler: Handler) -> Handler:
            self.register(method, handler, params_model)
            return handler
        return decorator

    def has(self, method: RpcMethod) -> bool:
        return method in self._routes

    @property
    def methods(self):
        return list(self._routes)

    async def dispatch(self, request: RpcRequest) -> RpcResponse:
        try:
            result = await self._invoke(request)
            return RpcResponse(id=request.id, result=result)
        except Exception as e:
            return RpcResponse(id=request.id, error=self.error_body(e, request.method))

    async def _invoke(self, request: RpcRequest) -> Any:
        method = RpcMethod.lookup(request.method)
        route = self._routes.get(method) if method is not None else None
        if route is None:
            raise MethodNotFoundError(f"Method not found: {request.method}")

        params = request.params
        if route.params_model is not None:
            try:
                params = route.params_model.model_validate(params or {})
            except ValidationError as e:
                raise InvalidParamsError(f"Invalid params for {request.method}: {_format_validation_error(e)}")

        result = route.handler(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def error_body(exc: Exception, method: str = "") -> RpcErrorBody:
        code = classify_exception(exc)
        if isinstance(exc, RpcError):
            logger.warning(f"RPC {method} failed ({code}): {exc.message}")
            return RpcErrorBody(code=code, message=exc.message, data=exc.data)

        logger.error(f"RPC {method} raised {exc.__class__.__name__}: {exc}")
        message = str(exc) or "Operation failed"
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return RpcErrorBody(code=code, message=message, data=stack)
