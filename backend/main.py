"""
Karli Share — FastAPI application entry point.

Builds the device identity, table store, record manager, notification
emitter and transfer manager on startup, serves the REST API and the
WebSocket event endpoint.
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import (
    API_HOST,
    API_PORT,
    CONFIG_DIR,
    LOG_LEVEL,
    STORE_BACKEND,
    SUPABASE_KEY,
    SUPABASE_URL,
)
from identity.provider import DeviceIdentity
from identity.store import KeyValueStore
from notifications.emitter import NOTIFICATIONS, NotificationEmitter
from storage.base import ChangeEvent, TableStore
from storage.memory import MemoryStore
from storage.rest import RestStore
from transfer.manager import TransferManager
from transfer.records import TransferRecordManager

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def make_store() -> TableStore:
    if STORE_BACKEND == "memory":
        logger.warning("Using in-memory store; nothing is shared with other devices")
        return MemoryStore()
    return RestStore(SUPABASE_URL, SUPABASE_KEY)


def create_app(
    store: TableStore | None = None,
    identity: DeviceIdentity | None = None,
    functions_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the application; arguments override the configured collaborators."""
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop services."""
        logger.info("Starting Karli Share services...")

        device = identity or DeviceIdentity(KeyValueStore(CONFIG_DIR / "state.json"))
        table_store = store or make_store()
        records = TransferRecordManager(table_store, device)
        notifier = NotificationEmitter(table_store)
        transfer_manager = TransferManager(records, notifier, client=functions_client)

        # Wire up event broadcasting
        transfer_manager.on_event(ws_manager.handle_event)

        async def on_transfers(transfers):
            await ws_manager.broadcast(
                "transfers", {"transfers": [t.model_dump(mode="json") for t in transfers]}
            )

        async def on_notification(event: ChangeEvent):
            count = await notifier.unread_count(device.device_id)
            await ws_manager.broadcast("notifications", {"unread_count": count})

        subscriptions = [
            records.subscribe(device.device_id, on_transfers),
            table_store.subscribe(
                NOTIFICATIONS, on_notification, match={"device_id": device.device_id}
            ),
        ]
        init_routes(device, records, notifier, transfer_manager)
        logger.info(f"Karli Share ready — API: {API_HOST}:{API_PORT}")

        try:
            yield
        finally:
            logger.info("Shutting down Karli Share services...")
            for subscription in subscriptions:
                subscription.unsubscribe()
            await transfer_manager.close()
            await table_store.close()

    app = FastAPI(
        title="Karli Share",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:8081", "http://127.0.0.1:8081",
            "http://localhost:19006", "http://127.0.0.1:19006",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await ws_manager.connect(websocket)
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)
        except Exception:
            await ws_manager.disconnect(websocket)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
