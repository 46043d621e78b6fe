"""
WebSocket signaling relay.

Every node runs one listener. Peers connect to each other directly, swap
`register` envelopes, and then exchange offer/answer/candidate envelopes
over that link. There is no broker.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from websockets.asyncio.client import connect
from websockets.asyncio.server import Server, serve
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import SIGNALING_CONNECT_TIMEOUT, SIGNALING_PORT
from signaling.models import (
    Envelope,
    EnvelopeType,
    LinkEvent,
    LinkEventKind,
    LinkInfo,
    SignalingLink,
)

logger = logging.getLogger(__name__)

EnvelopeCallback = Callable[[Envelope], Awaitable[None]]
LinkCallback = Callable[[LinkEvent], Awaitable[None]]


class SignalingError(Exception):
    """A signaling link could not be established."""


class SignalingTimeout(SignalingError):
    """The peer did not answer the registration handshake in time."""


class SignalingRelay:
    """Owns the table of signaling links keyed by peer device ID."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = SIGNALING_PORT,
        connect_timeout: float = SIGNALING_CONNECT_TIMEOUT,
    ) -> None:
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout
        self._local_id = ""
        self._local_name = ""
        self._server: Server | None = None
        self._links: dict[str, SignalingLink] = {}
        self._envelope_callbacks: list[EnvelopeCallback] = []
        self._link_callbacks: list[LinkCallback] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def local_id(self) -> str:
        return self._local_id

    @property
    def local_name(self) -> str:
        return self._local_name

    @local_name.setter
    def local_name(self, name: str) -> None:
        """Name sent in future register envelopes."""
        self._local_name = name

    @property
    def port(self) -> int:
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    @property
    def running(self) -> bool:
        return self._server is not None

    def on_envelope(self, callback: EnvelopeCallback) -> None:
        """Register an async callback for every non-register envelope."""
        self._envelope_callbacks.append(callback)

    def on_link_change(self, callback: LinkCallback) -> None:
        self._link_callbacks.append(callback)

    def get_links(self) -> list[LinkInfo]:
        return [
            LinkInfo(
                peer_id=link.peer_id,
                peer_name=link.peer_name,
                outbound=link.outbound,
                registered_at=link.registered_at,
            )
            for link in self._links.values()
        ]

    def is_linked(self, peer_id: str) -> bool:
        return peer_id in self._links

    # --- Lifecycle ---

    async def start(self, local_id: str, local_name: str) -> None:
        """Bind the listener and start accepting peer registrations."""
        self._local_id = local_id
        self._local_name = local_name
        self._server = await serve(self._handle_inbound, self._host, self._port)
        logger.info(f"Signaling relay listening on port {self.port}")

    async def stop(self) -> None:
        """Tell every peer we are leaving, then release all sockets."""
        readers = list(self._tasks)
        if self._links:
            await self.broadcast(
                Envelope(type=EnvelopeType.DISCONNECT, sender=self._local_id)
            )

        for link in list(self._links.values()):
            await self._close_socket(link.socket)
        for peer_id in list(self._links):
            self._drop_link(peer_id, self._links[peer_id].socket)

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        # Link-change callbacks spawned above still get to run
        for task in readers:
            task.cancel()
        logger.info("Signaling relay stopped")

    # --- Links ---

    def _register_envelope(self, to: str | None = None) -> Envelope:
        return Envelope(
            type=EnvelopeType.REGISTER,
            sender=self._local_id,
            to=to,
            device_id=self._local_id,
            device_name=self._local_name,
        )

    async def _handle_inbound(self, ws) -> None:
        remote = ws.remote_address
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self._connect_timeout)
            envelope = Envelope.from_json(raw)
        except asyncio.TimeoutError:
            logger.warning(f"Signaling client {remote} never registered")
            return
        except ConnectionClosed:
            return
        except ValueError as e:
            logger.warning(f"Invalid first envelope from {remote}: {e}")
            await ws.close(code=1008, reason="invalid envelope")
            return

        if envelope.type != EnvelopeType.REGISTER or not envelope.device_id:
            logger.warning(f"Signaling client {remote} sent {envelope.type.value} before register")
            await ws.close(code=1008, reason="register first")
            return

        peer_id = envelope.device_id
        stale = self._register(peer_id, envelope.device_name or peer_id, ws, outbound=False)
        try:
            await ws.send(self._register_envelope(to=peer_id).to_json())
        except ConnectionClosed:
            self._drop_link(peer_id, ws)
            return
        if stale is not None:
            await self._close_socket(stale)
            if stale is ws:
                return

        await self._read_loop(peer_id, ws)

    async def connect(self, peer_id: str, address: str, port: int) -> str:
        """Open a link to a peer's relay and wait for its registration reply.

        Returns the peer ID the remote side registered with.
        """
        if peer_id in self._links:
            return peer_id

        uri = f"ws://{address}:{port}"
        logger.info(f"Connecting to signaling relay of {peer_id} at {uri}")

        async def open_link():
            ws = await connect(uri, open_timeout=None, close_timeout=1)
            try:
                await ws.send(self._register_envelope(to=peer_id).to_json())
                while True:
                    try:
                        reply = Envelope.from_json(await ws.recv())
                    except ValueError as e:
                        logger.debug(f"Skipping invalid envelope from {uri}: {e}")
                        continue
                    if reply.type == EnvelopeType.REGISTER and reply.device_id:
                        return ws, reply
            except BaseException:
                await ws.close()
                raise

        try:
            ws, reply = await asyncio.wait_for(open_link(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            raise SignalingTimeout(
                f"No registration reply from {peer_id} at {uri} "
                f"within {self._connect_timeout:.0f}s"
            )
        except (OSError, WebSocketException) as e:
            raise SignalingError(f"Could not reach {peer_id} at {uri}: {e}") from e

        actual_id = reply.device_id
        if actual_id != peer_id:
            logger.warning(f"Relay at {uri} registered as {actual_id}, expected {peer_id}")

        stale = self._register(actual_id, reply.device_name or actual_id, ws, outbound=True)
        if stale is not ws:
            self._spawn(self._read_loop(actual_id, ws))
        if stale is not None:
            await self._close_socket(stale)
        return actual_id

    async def disconnect(self, peer_id: str) -> None:
        """Send a disconnect notice and close the link to one peer."""
        link = self._links.get(peer_id)
        if not link:
            return
        await self.send(
            peer_id,
            Envelope(type=EnvelopeType.DISCONNECT, sender=self._local_id, to=peer_id),
        )
        await self._close_socket(link.socket)
        self._drop_link(peer_id, link.socket)

    def _register(self, peer_id: str, peer_name: str, ws, outbound: bool):
        """Record a link to `peer_id` and return the socket it supersedes, if any.

        A simultaneous dial from both sides leaves two sockets. Both ends keep
        the one dialed by the larger device id, so the superseded socket may
        be `ws` itself. The caller closes it once its handshake is done.
        """
        existing = self._links.get(peer_id)
        if existing is not None and existing.socket is not ws:
            keep_outbound = self._local_id > peer_id
            if existing.outbound != outbound and existing.outbound == keep_outbound:
                logger.debug(f"Keeping existing signaling socket to {peer_id}")
                return ws
            stale = existing.socket
        else:
            stale = None

        self._links[peer_id] = SignalingLink(
            peer_id=peer_id, peer_name=peer_name, socket=ws, outbound=outbound
        )
        logger.info(f"Signaling link registered: {peer_name} ({peer_id})")
        if existing is None:
            self._emit_link(LinkEventKind.DEVICE_CONNECTED, peer_id, peer_name)
        return stale

    def _drop_link(self, peer_id: str, ws) -> None:
        link = self._links.get(peer_id)
        if link is None or link.socket is not ws:
            return
        del self._links[peer_id]
        logger.info(f"Signaling link closed: {link.peer_name} ({peer_id})")
        self._emit_link(LinkEventKind.DEVICE_DISCONNECTED, peer_id, link.peer_name)

    async def _read_loop(self, peer_id: str, ws) -> None:
        try:
            async for raw in ws:
                await self._handle_message(peer_id, raw)
        except ConnectionClosed:
            pass
        finally:
            self._drop_link(peer_id, ws)

    async def _handle_message(self, peer_id: str, raw: str | bytes) -> None:
        try:
            envelope = Envelope.from_json(raw)
        except ValueError as e:
            logger.warning(f"Dropping malformed envelope from {peer_id}: {e}")
            return

        if envelope.type == EnvelopeType.REGISTER:
            link = self._links.get(peer_id)
            if link and envelope.device_name:
                link.peer_name = envelope.device_name
            return

        if envelope.to and envelope.to != self._local_id:
            if not await self.send(envelope.to, envelope):
                logger.warning(f"Dropped {envelope.type.value} for unknown peer {envelope.to}")
            return

        logger.debug(f"Envelope {envelope.type.value} from {envelope.sender}")
        for cb in self._envelope_callbacks:
            try:
                await cb(envelope)
            except Exception as e:
                logger.error(f"Envelope callback error: {e}")

    # --- Sending ---

    async def send(self, peer_id: str, envelope: Envelope) -> bool:
        """Forward an envelope to a registered peer. False if not possible."""
        link = self._links.get(peer_id)
        if link is None:
            logger.warning(f"Cannot send {envelope.type.value}: no link to {peer_id}")
            return False
        try:
            await link.socket.send(envelope.to_json())
            return True
        except (ConnectionClosed, WebSocketException, OSError) as e:
            logger.warning(f"Sending {envelope.type.value} to {peer_id} failed: {e}")
            return False

    async def broadcast(self, envelope: Envelope) -> int:
        """Send to every registered peer; returns how many sends succeeded."""
        delivered = 0
        for peer_id in list(self._links):
            if await self.send(peer_id, envelope.model_copy(update={"to": peer_id})):
                delivered += 1
        return delivered

    # --- Helpers ---

    @staticmethod
    async def _close_socket(ws) -> None:
        try:
            await ws.close()
        except (ConnectionClosed, WebSocketException, OSError) as e:
            logger.debug(f"Error closing signaling socket: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit_link(self, kind: LinkEventKind, peer_id: str, peer_name: str) -> None:
        event = LinkEvent(kind=kind, peer_id=peer_id, peer_name=peer_name)
        for cb in self._link_callbacks:
            self._spawn(self._run_link_callback(cb, event))

    @staticmethod
    async def _run_link_callback(cb: LinkCallback, event: LinkEvent) -> None:
        try:
            await cb(event)
        except Exception as e:
            logger.error(f"Link event callback error: {e}")
