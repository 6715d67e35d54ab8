"""
WebSocket manager - connected UIs, direct sends and event broadcast
"""
import asyncio
import json
import logging
from typing import Any, Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self._send_locks: Dict[WebSocket, asyncio.Lock] = {}

    async def connect(self, websocket: WebSocket):
        """Accept a new client"""
        await websocket.accept()
        self.active_connections.append(websocket)
        self._send_locks[websocket] = asyncio.Lock()
        logger.info(f"WebSocket client connected ({len(self.active_connections)} active)")

    def disconnect(self, websocket: WebSocket):
        """Forget a client"""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket client disconnected ({len(self.active_connections)} active)")
        self._send_locks.pop(websocket, None)

    async def send(self, websocket: WebSocket, message: Dict[str, Any]):
        """Send one message to one client; frames from concurrent tasks never interleave"""
        lock = self._send_locks.get(websocket)
        if lock is None:
            raise ConnectionError("WebSocket is not connected")
        async with lock:
            await websocket.send_text(json.dumps(message))

    async def broadcast(self, message: Dict[str, Any]):
        """Send a message to every connected client"""
        if not self.active_connections:
            return

        disconnected = []
        for connection in list(self.active_connections):
            try:
                await self.send(connection, message)
            except Exception as e:
                logger.warning(f"Error sending WebSocket message: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)

    def publish(self, message: Dict[str, Any]):
        """Fire-and-forget broadcast for synchronous callers on the event loop"""
        if not self.active_connections:
            return
        asyncio.ensure_future(self.broadcast(message))


websocket_manager = WebSocketManager()
