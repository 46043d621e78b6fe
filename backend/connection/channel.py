"""
Framed data channel over a nominated TCP connection.

Every frame is a 1-byte type plus a 4-byte big-endian payload length,
followed by the payload. Text frames carry JSON control messages, binary
frames carry chunk data.
"""

import asyncio
import json
import logging
import struct
from enum import IntEnum
from typing import Any, Callable

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 32 * 1024 * 1024


class FrameType(IntEnum):
    TEXT = 0x01
    BINARY = 0x02
    CHECK = 0x10
    CHECK_OK = 0x11
    NOMINATE = 0x12


class ChannelClosed(Exception):
    """The data channel is closed or the peer went away."""


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame of {length} bytes exceeds limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


class DataChannel:
    """Bidirectional message channel between two peers."""

    def __init__(
        self,
        peer_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.peer_id = peer_id
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._close_callbacks: list[Callable[["DataChannel"], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_address(self) -> tuple | None:
        return self._writer.get_extra_info("peername")

    def on_close(self, callback: Callable[["DataChannel"], None]) -> None:
        """Register a sync callback run once when the channel closes."""
        self._close_callbacks.append(callback)

    async def send_json(self, message: dict[str, Any]) -> None:
        await self._send(FrameType.TEXT, json.dumps(message).encode("utf-8"))

    async def send_binary(self, data: bytes) -> None:
        await self._send(FrameType.BINARY, data)

    async def _send(self, frame_type: FrameType, payload: bytes) -> None:
        if self._closed:
            raise ChannelClosed(f"Channel to {self.peer_id} is closed")
        try:
            await send_frame(self._writer, frame_type, payload)
        except (ConnectionError, OSError) as e:
            self._mark_closed()
            raise ChannelClosed(f"Channel to {self.peer_id} lost: {e}") from e

    async def receive(self) -> str | bytes:
        """Wait for the next text (str) or binary (bytes) message."""
        while True:
            if self._closed:
                raise ChannelClosed(f"Channel to {self.peer_id} is closed")
            try:
                frame_type, payload = await recv_frame(self._reader)
            except (asyncio.IncompleteReadError, ConnectionError, OSError, ValueError) as e:
                self._mark_closed()
                raise ChannelClosed(f"Channel to {self.peer_id} lost: {e}") from e

            if frame_type == FrameType.TEXT:
                return payload.decode("utf-8")
            if frame_type == FrameType.BINARY:
                return payload
            # Late connectivity-check traffic after nomination
            logger.debug(f"Ignoring frame type {frame_type:#x} from {self.peer_id}")

    async def close(self) -> None:
        if self._closed:
            return
        self._mark_closed()
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing channel to {self.peer_id}: {e}")

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._writer.is_closing():
            self._writer.close()
        logger.info(f"Data channel to {self.peer_id} closed")
        for cb in self._close_callbacks:
            try:
                cb(self)
            except Exception as e:
                logger.error(f"Channel close callback error: {e}")
