"""WebSocket handler for real-time events."""

import asyncio
import json
import logging
import time

from fastapi import WebSocket

from connection.models import ConnectionEvent
from discovery.models import DeviceEvent
from transfer.registry import TransferEvent, TransferEventKind

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 0.2  # seconds between progress pushes per transfer


class ConnectionManager:
    """Manages WebSocket connections and broadcasts events."""

    def __init__(self, progress_interval: float = PROGRESS_INTERVAL) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._progress_interval = progress_interval
        self._last_progress: dict[str, float] = {}

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    # --- Event adapters ---

    async def handle_device_event(self, event: DeviceEvent) -> None:
        """Compatible with PresenceRegistry.on_device_change()."""
        await self.broadcast(event.kind.value, event.device.model_dump(mode="json"))

    async def handle_connection_event(self, event: ConnectionEvent) -> None:
        """Compatible with ConnectionEstablisher.on_state_change()."""
        await self.broadcast("connection_state", event.model_dump(mode="json"))

    async def handle_transfer_event(self, event: TransferEvent) -> None:
        """Registry subscriber; progress is throttled per transfer."""
        transfer_id = event.transfer.id
        if event.kind == TransferEventKind.PROGRESS:
            now = time.monotonic()
            last = self._last_progress.get(transfer_id)
            if last is not None and now - last < self._progress_interval:
                return
            self._last_progress[transfer_id] = now
        elif event.kind in (TransferEventKind.COMPLETE, TransferEventKind.ERROR):
            self._last_progress.pop(transfer_id, None)

        await self.broadcast(
            f"transfer_{event.kind.value}", event.transfer.model_dump(mode="json")
        )
