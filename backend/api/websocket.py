"""WebSocket fan-out of progress, transfer-list and alert events."""

import asyncio
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks connected UI clients and pushes ``{"event", "data"}`` messages to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"UI client connected. Total: {self.client_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"UI client disconnected. Total: {self.client_count}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Send an event to every client, dropping the ones that went away."""
        message = {"event": event, "data": data}
        async with self._lock:
            stale = []
            for ws in self._connections:
                try:
                    await ws.send_json(message)
                except Exception as e:
                    logger.debug(f"Dropping UI client: {e}")
                    stale.append(ws)
            for ws in stale:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Listener compatible with TransferManager.on_event()."""
        await self.broadcast(event_type, data)
