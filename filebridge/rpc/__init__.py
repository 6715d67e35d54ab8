from filebridge.rpc.client import RpcClient
from filebridge.rpc.endpoint import RpcEndpoint
from filebridge.rpc.protocol import RpcMethod, RpcRequest, RpcResponse
from filebridge.rpc.router import RpcRouter

__all__ = ["RpcClient", "RpcEndpoint", "RpcMethod", "RpcRequest", "RpcResponse", "RpcRouter"]
