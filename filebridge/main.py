"""
filebridge - main FastAPI application
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional, Set

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from filebridge.adapters.factory import AdapterFactory
from filebridge.api import build_rpc_router
from filebridge.api import router as api_router
from filebridge.config import APP_VERSION, HostDirectory, Settings, configure_logging
from filebridge.job_runner import TransferQueue
from filebridge.rpc.endpoint import RpcEndpoint
from filebridge.transfer_router import TransferDispatcher
from filebridge.websocket_manager import websocket_manager

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, adapters: Optional[AdapterFactory] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if adapters is None:
        adapters = AdapterFactory(HostDirectory.from_file(settings.hosts_file), chunk_size=settings.chunk_size)

    queue = TransferQueue(adapters, settings)
    queue.add_listener(websocket_manager.publish)
    dispatcher = TransferDispatcher(adapters, queue)
    rpc_router = build_rpc_router(queue, dispatcher, adapters, websocket_manager.publish)
    endpoints: Set[RpcEndpoint] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"filebridge {APP_VERSION} starting")
        yield
        for endpoint in list(endpoints):
            await endpoint.close()
        await queue.shutdown()
        await adapters.close()
        logger.info("filebridge stopped")

    app = FastAPI(title="filebridge", version=APP_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.adapters = adapters
    app.state.queue = queue
    app.state.rpc_router = rpc_router

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket_manager.connect(websocket)
        endpoint = RpcEndpoint(
            lambda envelope: websocket_manager.send(websocket, envelope),
            rpc_router,
            timeout_ms=settings.rpc_timeout_ms,
        )
        endpoints.add(endpoint)
        try:
            while True:
                data = await websocket.receive_text()
                await endpoint.handle_message(data)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            endpoints.discard(endpoint)
            websocket_manager.disconnect(websocket)
            await endpoint.close()

    return app


app = create_app()


def run():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("filebridge.main:app", host=settings.bind_host, port=settings.bind_port)


if __name__ == "__main__":
    run()
