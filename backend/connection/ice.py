"""
Candidate gathering and connectivity checks.

A candidate is a host:port where the local check listener accepts TCP.
A check dials a remote candidate and swaps CHECK / CHECK_OK frames that
name the session and both device IDs, so a stray listener on the same
port (for instance our own, reached through loopback) is never mistaken
for the peer.
"""

import asyncio
import json
import logging

from pydantic import BaseModel

from connection.channel import FrameType, recv_frame, send_frame
from discovery.addresses import local_ipv4_addresses

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


class Candidate(BaseModel):
    host: str
    port: int
    priority: int = 0

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"


class CheckFailed(Exception):
    pass


def gather_candidates(port: int, hosts: list[str] | None = None) -> list[Candidate]:
    """Candidates for every usable local IPv4 address, loopback last."""
    if hosts is None:
        hosts = local_ipv4_addresses() + [LOOPBACK]
    candidates = []
    seen = set()
    for host in hosts:
        if host in seen:
            continue
        seen.add(host)
        candidates.append(Candidate(host=host, port=port))
    total = len(candidates)
    for i, candidate in enumerate(candidates):
        candidate.priority = total - i
    return candidates


def _encode(message: dict) -> bytes:
    return json.dumps(message).encode("utf-8")


async def check_pair(
    candidate: Candidate,
    session_id: str,
    local_id: str,
    peer_id: str,
    timeout: float,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Dial a remote candidate and run the binding exchange.

    Returns the open stream pair on success, raises CheckFailed otherwise.
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(candidate.host, candidate.port), timeout
        )
    except (asyncio.TimeoutError, OSError) as e:
        raise CheckFailed(f"{candidate.key} unreachable: {e}") from e

    try:
        await send_frame(
            writer,
            FrameType.CHECK,
            _encode({"session_id": session_id, "from": local_id, "to": peer_id}),
        )
        frame_type, payload = await asyncio.wait_for(recv_frame(reader), timeout)
        reply = json.loads(payload) if payload else {}
    except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError, ValueError) as e:
        writer.close()
        raise CheckFailed(f"{candidate.key} check failed: {e}") from e
    except BaseException:
        writer.close()
        raise

    if (
        frame_type != FrameType.CHECK_OK
        or reply.get("session_id") != session_id
        or reply.get("from") != peer_id
    ):
        writer.close()
        raise CheckFailed(f"{candidate.key} answered for a different session")

    logger.debug(f"Check to {candidate.key} for session {session_id[:8]} succeeded")
    return reader, writer


async def answer_check(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    session_id: str,
    local_id: str,
    peer_id: str,
    timeout: float,
) -> bool:
    """Validate an inbound CHECK and reply CHECK_OK. False means reject."""
    try:
        frame_type, payload = await asyncio.wait_for(recv_frame(reader), timeout)
        request = json.loads(payload) if payload else {}
    except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError, ValueError) as e:
        logger.debug(f"Inbound check for session {session_id[:8]} aborted: {e}")
        return False

    if (
        frame_type != FrameType.CHECK
        or request.get("session_id") != session_id
        or request.get("from") != peer_id
        or request.get("to") != local_id
    ):
        logger.debug(f"Rejected inbound check for session {session_id[:8]}")
        return False

    try:
        await send_frame(
            writer,
            FrameType.CHECK_OK,
            _encode({"session_id": session_id, "from": local_id}),
        )
    except (ConnectionError, OSError) as e:
        logger.debug(f"Could not answer check for session {session_id[:8]}: {e}")
        return False
    return True


async def send_nomination(writer: asyncio.StreamWriter, session_id: str) -> None:
    await send_frame(writer, FrameType.NOMINATE, _encode({"session_id": session_id}))


async def wait_for_nomination(reader: asyncio.StreamReader, session_id: str) -> bool:
    """Block until the controlling side nominates this pair or drops it."""
    try:
        frame_type, payload = await recv_frame(reader)
        message = json.loads(payload) if payload else {}
    except (asyncio.IncompleteReadError, OSError, ValueError):
        return False
    return frame_type == FrameType.NOMINATE and message.get("session_id") == session_id
