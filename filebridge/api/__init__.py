from fastapi import APIRouter

from filebridge.api import filesystem, health, transfer
from filebridge.rpc.router import RpcRouter

router = APIRouter()

router.include_router(health.router, tags=["health"])


def build_rpc_router(queue, dispatcher, adapters, publish) -> RpcRouter:
    """RPC registry with every transfer.* and fs.* method"""
    rpc = RpcRouter()
    transfer.register(rpc, queue, dispatcher)
    filesystem.register(rpc, adapters, publish)
    return rpc
