"""
Heartbeat endpoint and liveness probe.

Every node serves `GET /status` on its heartbeat port. Peers poll it to
confirm liveness independently of mDNS announcements.
"""

import asyncio
import contextlib
import logging
import socket
import time

import httpx
import uvicorn
from fastapi import FastAPI

from config import APP_ID, HEARTBEAT_TIMEOUT

logger = logging.getLogger(__name__)


def create_heartbeat_app() -> FastAPI:
    app = FastAPI(title=f"{APP_ID} heartbeat", docs_url=None, redoc_url=None)

    @app.get("/status")
    async def status():
        return {
            "app": APP_ID,
            "running": True,
            "timestamp": int(time.time() * 1000),
        }

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host app."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HeartbeatServer:
    """Serves the heartbeat app in the background on the current loop."""

    def __init__(self, port: int, host: str = "0.0.0.0") -> None:
        self._host = host
        self._port = port
        self._socket: socket.socket | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    @property
    def port(self) -> int:
        """Bound port (resolves port 0 once started)."""
        if self._socket:
            return self._socket.getsockname()[1]
        return self._port

    @property
    def running(self) -> bool:
        return self._server is not None and self._server.started

    async def start(self, startup_timeout: float = 5.0) -> None:
        if self.running:
            return

        # Bind here so a busy port raises OSError instead of uvicorn exiting
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._host, self._port))
        except OSError:
            sock.close()
            raise
        self._socket = sock

        config = uvicorn.Config(
            create_heartbeat_app(),
            log_level="warning",
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        deadline = time.monotonic() + startup_timeout
        while not self._server.started:
            if self._task.done():
                await self.stop()
                raise OSError(f"Heartbeat server failed to start on port {self._port}")
            if time.monotonic() > deadline:
                await self.stop()
                raise TimeoutError("Heartbeat server did not start in time")
            await asyncio.sleep(0.05)

        logger.info(f"Heartbeat endpoint listening on port {self.port}")

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True
        if self._task:
            await self._task
        if self._socket:
            self._socket.close()
        self._server = None
        self._task = None
        self._socket = None
        logger.info("Heartbeat endpoint stopped")


async def probe(address: str, port: int, timeout: float = HEARTBEAT_TIMEOUT) -> bool:
    """Return True if `GET /status` answers with a running node in time."""
    url = f"http://{address}:{port}/status"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
        if response.status_code != 200:
            return False
        return bool(response.json().get("running", False))
    except (httpx.HTTPError, ValueError) as e:
        logger.debug(f"Heartbeat probe to {url} failed: {e}")
        return False
