"""
LAN File: FastAPI application entry point.

Starts the node (presence, heartbeat, signaling, transfers) on startup,
serves the REST API and the WebSocket event stream.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, APP_VERSION, CORS_ORIGINS
from node import LanFileNode
from settings import Settings

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, node: LanFileNode | None = None) -> FastAPI:
    """Build the API around one node; the node is started by the lifespan."""
    settings = settings or Settings()
    node = node or LanFileNode(settings)
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting LAN File services...")

        try:
            # Wire up event broadcasting
            node.presence.on_device_change(ws_manager.handle_device_event)
            node.establisher.on_state_change(ws_manager.handle_connection_event)
            unsubscribe = node.transfers.subscribe(ws_manager.handle_transfer_event)

            await node.start()
            logger.info(f"LAN File ready. API: {API_HOST}:{API_PORT}")

            yield

            unsubscribe()
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down LAN File services...")
            await node.stop()

    app = FastAPI(
        title="LAN File",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.node = node
    app.state.ws_manager = ws_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
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

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(),
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
