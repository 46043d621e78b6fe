"""
Connection establisher.

Turns offer/answer/ice-candidate envelopes from the signaling relay into
one open DataChannel per peer. Each side runs a short-lived TCP listener
whose addresses are its candidates; both sides dial each other's
candidates, and the initiator (the controlling side) nominates the first
pair that completes a check.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable

from config import CHECK_TIMEOUT, NEGOTIATION_TIMEOUT
from connection.channel import DataChannel
from connection.ice import (
    Candidate,
    CheckFailed,
    answer_check,
    check_pair,
    gather_candidates,
    send_nomination,
    wait_for_nomination,
)
from connection.models import (
    ChannelState,
    ConnectionEvent,
    FailureReason,
    LocalRole,
    SessionInfo,
)
from signaling.models import Envelope, EnvelopeType, LinkEvent, LinkEventKind

logger = logging.getLogger(__name__)

ChannelCallback = Callable[[str, DataChannel], Awaitable[None]]
StateCallback = Callable[[ConnectionEvent], Awaitable[None]]

ICE_FAILURE_MESSAGE = (
    "Every candidate pair failed. The network may block direct connections "
    "between devices (client isolation on the access point or a firewall)."
)


class NegotiationFailed(Exception):
    """No data channel could be opened to a peer."""

    def __init__(self, peer_id: str, reason: FailureReason, message: str):
        super().__init__(message)
        self.peer_id = peer_id
        self.reason = reason
        self.message = message


@dataclass
class _Session:
    peer_id: str
    session_id: str
    role: LocalRole
    opened: asyncio.Future
    state: ChannelState = ChannelState.CONNECTING
    failure_reason: FailureReason | None = None
    local_candidates: list[Candidate] = field(default_factory=list)
    remote_candidates: list[Candidate] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    server: asyncio.Server | None = None
    channel: DataChannel | None = None
    answered: bool = False
    local_done: bool = False
    remote_done: bool = False
    nominated: bool = False
    inflight: int = 0
    pairs: list[asyncio.StreamWriter] = field(default_factory=list)
    tasks: set[asyncio.Task] = field(default_factory=set)
    deadline: asyncio.TimerHandle | None = None
    grace: asyncio.TimerHandle | None = None

    def info(self) -> SessionInfo:
        return SessionInfo(
            peer_id=self.peer_id,
            session_id=self.session_id,
            local_role=self.role,
            channel_state=self.state,
            failure_reason=self.failure_reason,
            local_candidates=list(self.local_candidates),
            remote_candidates=list(self.remote_candidates),
            created_at=self.created_at,
        )


class ConnectionEstablisher:
    """Negotiates and owns the data channels to peers."""

    def __init__(
        self,
        relay,
        local_id: str,
        timeout: float = NEGOTIATION_TIMEOUT,
        check_timeout: float = CHECK_TIMEOUT,
        candidate_hosts: list[str] | None = None,
        bind_host: str = "0.0.0.0",
    ) -> None:
        self._relay = relay
        self._local_id = local_id
        self._timeout = timeout
        self._check_timeout = check_timeout
        self._candidate_hosts = candidate_hosts
        self._bind_host = bind_host
        self._sessions: dict[str, _Session] = {}
        self._states: dict[str, ChannelState] = {}
        self._channel_callbacks: list[ChannelCallback] = []
        self._state_callbacks: list[StateCallback] = []
        self._tasks: set[asyncio.Task] = set()

        relay.on_envelope(self.handle_envelope)
        relay.on_link_change(self.handle_link_change)

    def on_channel_open(self, callback: ChannelCallback) -> None:
        """Register callback: async fn(peer_id, channel)."""
        self._channel_callbacks.append(callback)

    def on_state_change(self, callback: StateCallback) -> None:
        self._state_callbacks.append(callback)

    def get_state(self, peer_id: str) -> ChannelState:
        return self._states.get(peer_id, ChannelState.IDLE)

    def get_sessions(self) -> list[SessionInfo]:
        return [s.info() for s in self._sessions.values()]

    def get_channel(self, peer_id: str) -> DataChannel | None:
        session = self._sessions.get(peer_id)
        if session and session.state == ChannelState.CONNECTED:
            return session.channel
        return None

    # --- Public operations ---

    async def connect(self, peer_id: str) -> DataChannel:
        """Open (or reuse) a data channel to a peer.

        Raises NegotiationFailed on timeout or when every candidate pair fails.
        """
        session = self._sessions.get(peer_id)
        if session and session.state == ChannelState.CONNECTED:
            return session.channel

        if session is None:
            if not self._relay.is_linked(peer_id):
                raise NegotiationFailed(
                    peer_id, FailureReason.ICE, f"No signaling link to {peer_id}"
                )
            session = await self._create_session(peer_id, LocalRole.INITIATOR, uuid.uuid4().hex)
            if self._is_current(session):
                logger.info(f"Offering session {session.session_id[:8]} to {peer_id}")
                sent = await self._relay.send(
                    peer_id,
                    self._envelope(
                        EnvelopeType.OFFER,
                        peer_id,
                        {"session_id": session.session_id, "candidates": []},
                    ),
                )
                if not sent:
                    self._fail(session, FailureReason.ICE, "Could not deliver offer", notify=False)

        return await asyncio.shield(session.opened)

    async def close(self, peer_id: str) -> None:
        """Close the channel to a peer, or abort a negotiation in progress."""
        session = self._sessions.get(peer_id)
        if session is None:
            return
        if session.state == ChannelState.CONNECTED and session.channel:
            await session.channel.close()
            return

        self._teardown(session)
        self._sessions.pop(peer_id, None)
        self._set_state(session, ChannelState.CLOSED, message="Negotiation aborted locally")
        if not session.opened.done():
            session.opened.set_exception(
                NegotiationFailed(peer_id, FailureReason.ICE, "Negotiation aborted locally")
            )
            session.opened.exception()
        self._spawn(self._notify_abandon(session, "aborted"))

    async def stop(self) -> None:
        for peer_id in list(self._sessions):
            await self.close(peer_id)
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    # --- Signaling input ---

    async def handle_envelope(self, envelope: Envelope) -> None:
        data = envelope.data if isinstance(envelope.data, dict) else {}
        if envelope.type == EnvelopeType.OFFER:
            await self._handle_offer(envelope.sender, data)
        elif envelope.type == EnvelopeType.ANSWER:
            await self._handle_answer(envelope.sender, data)
        elif envelope.type == EnvelopeType.ICE_CANDIDATE:
            self._handle_candidate(envelope.sender, data)
        elif envelope.type == EnvelopeType.DISCONNECT:
            self._handle_disconnect(envelope.sender, data)

    async def handle_link_change(self, event: LinkEvent) -> None:
        if event.kind != LinkEventKind.DEVICE_DISCONNECTED:
            return
        session = self._sessions.get(event.peer_id)
        # An open channel outlives the signaling link
        if session and session.state == ChannelState.CONNECTING:
            self._fail(session, FailureReason.ICE, "Signaling link lost", notify=False)

    async def _handle_offer(self, peer_id: str, data: dict) -> None:
        session_id = data.get("session_id")
        if not session_id:
            logger.warning(f"Offer from {peer_id} without session id")
            return

        inherited = None
        existing = self._sessions.get(peer_id)
        if existing:
            if existing.session_id == session_id:
                return
            if existing.state == ChannelState.CONNECTING:
                if existing.role == LocalRole.INITIATOR and self._local_id > peer_id:
                    logger.info(f"Simultaneous offers with {peer_id}; keeping ours")
                    return
                logger.info(f"Replacing session {existing.session_id[:8]} with {peer_id}")
                inherited = existing.opened
                self._abandon(existing)
            else:
                logger.info(f"{peer_id} offered a new session; closing current channel")
                self._abandon(existing)
                if existing.channel:
                    await existing.channel.close()

        session = await self._create_session(
            peer_id, LocalRole.RESPONDER, session_id, opened=inherited
        )
        if not self._is_current(session):
            return

        logger.info(f"Answering session {session_id[:8]} from {peer_id}")
        for raw in data.get("candidates") or []:
            self._add_remote_candidate(session, raw)

        sent = await self._relay.send(
            peer_id,
            self._envelope(
                EnvelopeType.ANSWER, peer_id, {"session_id": session_id, "candidates": []}
            ),
        )
        if not sent:
            self._fail(session, FailureReason.ICE, "Could not deliver answer", notify=False)
            return
        await self._trickle(session)

    async def _handle_answer(self, peer_id: str, data: dict) -> None:
        session = self._match(peer_id, data)
        if session is None or session.role != LocalRole.INITIATOR or session.answered:
            return
        session.answered = True
        logger.info(f"{peer_id} answered session {session.session_id[:8]}")
        for raw in data.get("candidates") or []:
            self._add_remote_candidate(session, raw)
        await self._trickle(session)

    def _handle_candidate(self, peer_id: str, data: dict) -> None:
        session = self._match(peer_id, data)
        if session is None:
            logger.debug(f"Dropping candidate from {peer_id} for unknown session")
            return
        if data.get("done"):
            session.remote_done = True
            self._maybe_schedule_failure(session)
            return
        if data.get("candidate"):
            self._add_remote_candidate(session, data["candidate"])

    def _handle_disconnect(self, peer_id: str, data: dict) -> None:
        session = self._sessions.get(peer_id)
        if session is None or session.state != ChannelState.CONNECTING:
            return
        if data.get("session_id") not in (None, session.session_id):
            return
        reason = data.get("reason") or "disconnected"
        self._fail(
            session,
            FailureReason.ICE,
            f"Peer ended the negotiation ({reason})",
            notify=False,
        )

    # --- Sessions ---

    async def _create_session(
        self,
        peer_id: str,
        role: LocalRole,
        session_id: str,
        opened: asyncio.Future | None = None,
    ) -> _Session:
        loop = asyncio.get_running_loop()
        session = _Session(
            peer_id=peer_id,
            session_id=session_id,
            role=role,
            opened=opened or loop.create_future(),
        )
        # Registered before the first await so a crossing offer sees it
        self._sessions[peer_id] = session
        self._set_state(session, ChannelState.CONNECTING)

        try:
            server = await asyncio.start_server(
                partial(self._handle_inbound_check, session), self._bind_host, 0
            )
        except OSError as e:
            self._fail(
                session,
                FailureReason.ICE,
                f"Could not open candidate listener: {e}",
                notify=False,
            )
            return session

        if session.state != ChannelState.CONNECTING or self._sessions.get(peer_id) is not session:
            # Superseded while binding
            server.close()
            return session

        session.server = server
        port = server.sockets[0].getsockname()[1]
        session.local_candidates = gather_candidates(port, self._candidate_hosts)
        session.deadline = loop.call_later(
            self._timeout,
            self._fail,
            session,
            FailureReason.TIMEOUT,
            f"No data channel to {peer_id} within {self._timeout:.0f}s",
        )
        return session

    def _is_current(self, session: _Session) -> bool:
        return (
            session.state == ChannelState.CONNECTING
            and self._sessions.get(session.peer_id) is session
        )

    def _abandon(self, session: _Session) -> None:
        """Drop a session that a newer offer replaces, leaving its future alone."""
        if session.state == ChannelState.CONNECTING:
            self._teardown(session)
            session.state = ChannelState.CLOSED
        if self._sessions.get(session.peer_id) is session:
            del self._sessions[session.peer_id]

    def _match(self, peer_id: str, data: dict) -> _Session | None:
        session = self._sessions.get(peer_id)
        if session is None or session.state != ChannelState.CONNECTING:
            return None
        if data.get("session_id") != session.session_id:
            return None
        return session

    def _add_remote_candidate(self, session: _Session, raw: dict) -> None:
        try:
            candidate = Candidate.model_validate(raw)
        except ValueError as e:
            logger.warning(f"Invalid candidate from {session.peer_id}: {e}")
            return
        if any(c.key == candidate.key for c in session.remote_candidates):
            return
        session.remote_candidates.append(candidate)
        self._start_check(session, candidate)

    async def _trickle(self, session: _Session) -> None:
        for candidate in session.local_candidates:
            if not self._is_current(session):
                return
            await self._relay.send(
                session.peer_id,
                self._envelope(
                    EnvelopeType.ICE_CANDIDATE,
                    session.peer_id,
                    {"session_id": session.session_id, "candidate": candidate.model_dump()},
                ),
            )
        await self._relay.send(
            session.peer_id,
            self._envelope(
                EnvelopeType.ICE_CANDIDATE,
                session.peer_id,
                {"session_id": session.session_id, "done": True},
            ),
        )
        session.local_done = True
        self._maybe_schedule_failure(session)

    # --- Connectivity checks ---

    def _start_check(self, session: _Session, candidate: Candidate) -> None:
        if session.state != ChannelState.CONNECTING:
            return
        session.inflight += 1
        task = self._spawn(self._run_check(session, candidate))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)

    async def _run_check(self, session: _Session, candidate: Candidate) -> None:
        try:
            reader, writer = await check_pair(
                candidate,
                session.session_id,
                self._local_id,
                session.peer_id,
                self._check_timeout,
            )
        except CheckFailed as e:
            logger.debug(f"Session {session.session_id[:8]}: {e}")
        else:
            await self._on_pair_ready(session, reader, writer)
        finally:
            session.inflight -= 1
            self._maybe_schedule_failure(session)

    async def _handle_inbound_check(
        self,
        session: _Session,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if session.state != ChannelState.CONNECTING:
            writer.close()
            return
        ok = await answer_check(
            reader,
            writer,
            session.session_id,
            self._local_id,
            session.peer_id,
            self._check_timeout,
        )
        if not ok:
            writer.close()
            return
        await self._on_pair_ready(session, reader, writer)

    async def _on_pair_ready(
        self,
        session: _Session,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if session.state != ChannelState.CONNECTING:
            writer.close()
            return

        if session.grace:
            session.grace.cancel()
            session.grace = None

        if session.role == LocalRole.INITIATOR:
            if session.nominated:
                writer.close()
                return
            session.nominated = True
            try:
                await send_nomination(writer, session.session_id)
            except (ConnectionError, OSError) as e:
                logger.debug(f"Nomination on session {session.session_id[:8]} failed: {e}")
                session.nominated = False
                writer.close()
                self._maybe_schedule_failure(session)
                return
            self._open_channel(session, reader, writer)
            return

        session.pairs.append(writer)
        if await wait_for_nomination(reader, session.session_id):
            if session.state == ChannelState.CONNECTING:
                self._open_channel(session, reader, writer)
                return
        if writer in session.pairs:
            session.pairs.remove(writer)
        writer.close()
        self._maybe_schedule_failure(session)

    def _maybe_schedule_failure(self, session: _Session) -> None:
        if (
            not self._is_current(session)
            or not session.local_done
            or not session.remote_done
            or session.inflight
            or session.pairs
            or session.nominated
            or session.grace
        ):
            return
        # Inbound checks from the peer may still land; give them one window
        session.grace = asyncio.get_running_loop().call_later(
            2 * self._check_timeout,
            self._fail,
            session,
            FailureReason.ICE,
            ICE_FAILURE_MESSAGE,
        )

    # --- Outcomes ---

    def _open_channel(
        self,
        session: _Session,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._teardown(session, keep=writer)
        channel = DataChannel(session.peer_id, reader, writer)
        channel.on_close(partial(self._handle_channel_closed, session))
        session.channel = channel
        self._set_state(session, ChannelState.CONNECTED)
        logger.info(f"Data channel to {session.peer_id} open ({session.role.value})")

        if not session.opened.done():
            session.opened.set_result(channel)
        for cb in self._channel_callbacks:
            self._spawn(self._run_channel_callback(cb, session.peer_id, channel))

    def _fail(
        self,
        session: _Session,
        reason: FailureReason,
        message: str,
        notify: bool = True,
    ) -> None:
        if session.state != ChannelState.CONNECTING:
            return
        self._teardown(session)
        session.failure_reason = reason
        if self._sessions.get(session.peer_id) is session:
            del self._sessions[session.peer_id]
        self._set_state(session, ChannelState.FAILED, reason=reason, message=message)
        logger.warning(f"Negotiation with {session.peer_id} failed ({reason.value}): {message}")

        if not session.opened.done():
            session.opened.set_exception(NegotiationFailed(session.peer_id, reason, message))
            # Responder sessions may have no waiter
            session.opened.exception()
        if notify:
            self._spawn(self._notify_abandon(session, reason.value))

    def _teardown(self, session: _Session, keep: asyncio.StreamWriter | None = None) -> None:
        for handle in (session.deadline, session.grace):
            if handle:
                handle.cancel()
        session.deadline = None
        session.grace = None

        current = asyncio.current_task()
        for task in list(session.tasks):
            if task is not current:
                task.cancel()
        for writer in session.pairs:
            if writer is not keep:
                writer.close()
        session.pairs.clear()

        if session.server:
            session.server.close()
            session.server = None

    def _handle_channel_closed(self, session: _Session, channel: DataChannel) -> None:
        session.state = ChannelState.CLOSED
        if self._sessions.get(session.peer_id) is session:
            del self._sessions[session.peer_id]
            self._set_state(session, ChannelState.CLOSED)
        else:
            logger.debug(f"Superseded channel to {session.peer_id} closed")

    async def _notify_abandon(self, session: _Session, reason: str) -> None:
        await self._relay.send(
            session.peer_id,
            self._envelope(
                EnvelopeType.DISCONNECT,
                session.peer_id,
                {"session_id": session.session_id, "reason": reason},
            ),
        )

    # --- Helpers ---

    def _envelope(self, type_: EnvelopeType, to: str, data: dict) -> Envelope:
        return Envelope(type=type_, sender=self._local_id, to=to, data=data)

    def _set_state(
        self,
        session: _Session,
        state: ChannelState,
        reason: FailureReason | None = None,
        message: str | None = None,
    ) -> None:
        session.state = state
        self._states[session.peer_id] = state
        event = ConnectionEvent(
            peer_id=session.peer_id,
            state=state,
            session_id=session.session_id,
            role=session.role,
            failure_reason=reason,
            message=message,
        )
        for cb in self._state_callbacks:
            self._spawn(self._run_state_callback(cb, event))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _run_channel_callback(cb: ChannelCallback, peer_id: str, channel: DataChannel) -> None:
        try:
            await cb(peer_id, channel)
        except Exception as e:
            logger.error(f"Channel open callback error: {e}")

    @staticmethod
    async def _run_state_callback(cb: StateCallback, event: ConnectionEvent) -> None:
        try:
            await cb(event)
        except Exception as e:
            logger.error(f"Connection state callback error: {e}")
