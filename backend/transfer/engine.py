"""
Transfer engine.

Drives the chunk protocol over open data channels:

    sender                          receiver
    file-info            ------>
                         <------    file-info-received
    chunk 0..n-1 (binary)------>
    file-complete        ------>
                         <------    request-chunk (optional, best-effort)

Every control message and chunk is keyed by transfer id, so any number of
transfers can share one channel in both directions.
"""

import asyncio
import logging
import mimetypes
import os
import time
from dataclasses import dataclass, field

from config import FILE_INFO_ACK_TIMEOUT, RESEND_GRACE_PERIOD
from connection.channel import ChannelClosed, DataChannel
from transfer.chunking import (
    MissingChunksError,
    ThroughputSampler,
    chunk_count,
    estimate_eta,
    missing_indexes,
    progress_percent,
    read_chunk,
    reassemble,
)
from transfer.models import (
    Transfer,
    TransferDirection,
    TransferStatus,
    created_at_from_id,
    new_transfer_id,
)
from transfer.protocol import (
    FileComplete,
    FileInfo,
    FileInfoReceived,
    RequestChunk,
    TransferErrorMessage,
    TransferProtocolError,
    decode_chunk,
    decode_control,
    encode_chunk,
)
from transfer.registry import TransferRegistry, TransferStateError

logger = logging.getLogger(__name__)


@dataclass
class _Outgoing:
    transfer_id: str
    peer_id: str
    path: str
    chunk_size: int
    total_chunks: int
    ack: asyncio.Future
    sampler: ThroughputSampler = field(default_factory=ThroughputSampler)
    resent: set[int] = field(default_factory=set)


@dataclass
class _Incoming:
    transfer_id: str
    peer_id: str
    name: str
    size: int
    total_chunks: int
    chunks: dict[int, bytes] = field(default_factory=dict)
    received: int = 0
    sampler: ThroughputSampler = field(default_factory=ThroughputSampler)


class TransferEngine:
    """Sends and receives files over the channels handed to it."""

    def __init__(
        self,
        registry: TransferRegistry,
        writer,
        settings,
        ack_timeout: float = FILE_INFO_ACK_TIMEOUT,
        resend_grace: float = RESEND_GRACE_PERIOD,
    ) -> None:
        self._registry = registry
        self._writer = writer
        self._settings = settings
        self._ack_timeout = ack_timeout
        self._resend_grace = resend_grace
        self._channels: dict[str, DataChannel] = {}
        self._readers: dict[str, asyncio.Task] = {}
        self._outgoing: dict[str, _Outgoing] = {}
        self._incoming: dict[str, _Incoming] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def registry(self) -> TransferRegistry:
        return self._registry

    def has_channel(self, peer_id: str) -> bool:
        channel = self._channels.get(peer_id)
        return channel is not None and not channel.closed

    async def attach_channel(self, peer_id: str, channel: DataChannel) -> None:
        """Start serving the transfer protocol on a freshly opened channel."""
        if self._channels.get(peer_id) is channel:
            return
        self._channels[peer_id] = channel
        self._readers[peer_id] = self._spawn(self._read_loop(peer_id, channel))
        logger.info(f"Transfer engine attached to channel for {peer_id}")

    async def stop(self) -> None:
        for task in list(self._readers.values()) + list(self._tasks):
            task.cancel()
        self._readers.clear()
        self._tasks.clear()
        for transfer_id in list(self._incoming) + list(self._outgoing):
            self._fail(transfer_id, "Node shutting down", notify=False)
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self._channels.clear()

    # --- Sending ---

    async def start_send(self, peer_id: str, path: str) -> Transfer:
        """Create the upload record and stream the file in the background."""
        outgoing, transfer = await self._prepare_send(peer_id, path)
        self._spawn(self._run_send(outgoing))
        return transfer

    async def send_file(self, peer_id: str, path: str) -> Transfer:
        """Send one file and return its final record."""
        outgoing, _ = await self._prepare_send(peer_id, path)
        await self._run_send(outgoing)
        return self._registry.get(outgoing.transfer_id)

    async def _prepare_send(self, peer_id: str, path: str) -> tuple[_Outgoing, Transfer]:
        if not self.has_channel(peer_id):
            raise ChannelClosed(f"No open channel to {peer_id}")

        size = (await asyncio.to_thread(os.stat, path)).st_size
        chunk_size = self._settings.chunk_size
        transfer_id = new_transfer_id()
        total_chunks = chunk_count(size, chunk_size)

        transfer = self._registry.add(
            Transfer(
                id=transfer_id,
                file_name=os.path.basename(path),
                size=size,
                mime_type=mimetypes.guess_type(path)[0] or "application/octet-stream",
                direction=TransferDirection.UPLOAD,
                peer_id=peer_id,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                created_at=created_at_from_id(transfer_id),
            )
        )
        outgoing = _Outgoing(
            transfer_id=transfer_id,
            peer_id=peer_id,
            path=path,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            ack=asyncio.get_running_loop().create_future(),
        )
        self._outgoing[transfer_id] = outgoing
        logger.info(f"Queued {transfer.file_name} ({size} bytes) for {peer_id} as {transfer_id}")
        return outgoing, transfer

    async def _run_send(self, outgoing: _Outgoing) -> None:
        transfer_id = outgoing.transfer_id
        transfer = self._registry.get(transfer_id)
        channel = self._channels.get(outgoing.peer_id)

        try:
            if channel is None:
                raise ChannelClosed(f"No open channel to {outgoing.peer_id}")

            await channel.send_json(
                FileInfo(
                    transfer_id=transfer_id,
                    name=transfer.file_name,
                    size=transfer.size,
                    mime_type=transfer.mime_type,
                    chunk_size=outgoing.chunk_size,
                    total_chunks=outgoing.total_chunks,
                ).to_dict()
            )
            try:
                accepted = await asyncio.wait_for(
                    asyncio.shield(outgoing.ack), self._ack_timeout
                )
            except asyncio.TimeoutError:
                self._fail(
                    transfer_id,
                    f"Receiver did not acknowledge within {self._ack_timeout:.0f}s",
                    notify=True,
                )
                return
            if not accepted:
                return

            self._registry.update(transfer_id, status=TransferStatus.TRANSFERRING)
            outgoing.sampler = ThroughputSampler()
            sent = 0
            for index in range(outgoing.total_chunks):
                data = await asyncio.to_thread(
                    read_chunk, outgoing.path, index, outgoing.chunk_size
                )
                await channel.send_binary(
                    encode_chunk(transfer_id, index, outgoing.total_chunks, data)
                )
                sent = min(transfer.size, sent + len(data))
                self._record_progress(transfer_id, sent, outgoing.sampler.sample(sent))

            await channel.send_json(FileComplete(transfer_id=transfer_id).to_dict())
            self._registry.update(
                transfer_id,
                status=TransferStatus.COMPLETED,
                bytes_moved=transfer.size,
                progress_percent=100,
                eta_seconds=0.0,
            )
            logger.info(f"Sent {transfer.file_name} to {outgoing.peer_id}")
            self._evictions[transfer_id] = asyncio.get_running_loop().call_later(
                self._resend_grace, self._evict_upload, transfer_id
            )
        except ChannelClosed as e:
            self._fail(transfer_id, f"Connection lost: {e}", notify=False)
        except OSError as e:
            self._fail(transfer_id, f"Could not read {outgoing.path}: {e}", notify=True)
        except TransferStateError as e:
            # Failed elsewhere (peer error or lost channel) while streaming
            logger.info(f"Stopped sending {transfer_id}: {e}")

    def _evict_upload(self, transfer_id: str) -> None:
        """Forget a completed upload once its resend window has passed."""
        self._evictions.pop(transfer_id, None)
        if self._outgoing.pop(transfer_id, None):
            logger.debug(f"Upload {transfer_id} no longer resendable")

    async def _resend(self, peer_id: str, request: RequestChunk) -> None:
        outgoing = self._outgoing.get(request.transfer_id)
        if outgoing is None or outgoing.peer_id != peer_id:
            logger.warning(f"request-chunk for unknown upload {request.transfer_id}")
            return
        if request.index >= outgoing.total_chunks:
            logger.warning(f"request-chunk index {request.index} out of range for {request.transfer_id}")
            return
        if request.index in outgoing.resent:
            logger.debug(f"Chunk {request.index} of {request.transfer_id} already resent")
            return
        outgoing.resent.add(request.index)

        channel = self._channels.get(peer_id)
        if channel is None:
            return
        try:
            data = await asyncio.to_thread(
                read_chunk, outgoing.path, request.index, outgoing.chunk_size
            )
            await channel.send_binary(
                encode_chunk(request.transfer_id, request.index, outgoing.total_chunks, data)
            )
            logger.info(f"Resent chunk {request.index} of {request.transfer_id}")
        except OSError as e:
            logger.warning(f"Cannot resend chunk {request.index} of {request.transfer_id}: {e}")
        except ChannelClosed as e:
            logger.warning(f"Cannot resend chunk {request.index} of {request.transfer_id}: {e}")

    # --- Receiving ---

    async def _read_loop(self, peer_id: str, channel: DataChannel) -> None:
        try:
            while True:
                message = await channel.receive()
                if isinstance(message, bytes):
                    await self._handle_chunk(peer_id, message)
                else:
                    await self._handle_control(peer_id, message)
        except ChannelClosed:
            pass
        finally:
            if self._channels.get(peer_id) is channel:
                del self._channels[peer_id]
                self._readers.pop(peer_id, None)
                self._handle_channel_lost(peer_id)

    async def _handle_control(self, peer_id: str, raw: str) -> None:
        try:
            message = decode_control(raw)
        except TransferProtocolError as e:
            logger.warning(f"Bad control message from {peer_id}: {e}")
            return

        logger.debug(f"{message.type} for {message.transfer_id} from {peer_id}")
        try:
            await self._dispatch_control(peer_id, message)
        except ChannelClosed:
            raise
        except Exception as e:
            logger.exception(f"Failed handling {message.type} for {message.transfer_id} from {peer_id}")
            self._fail(message.transfer_id, f"Could not process {message.type}: {e}", notify=True)

    async def _dispatch_control(self, peer_id: str, message) -> None:
        if isinstance(message, FileInfo):
            await self._accept_file(peer_id, message)
        elif isinstance(message, FileInfoReceived):
            outgoing = self._outgoing.get(message.transfer_id)
            if outgoing and not outgoing.ack.done():
                outgoing.ack.set_result(True)
        elif isinstance(message, FileComplete):
            await self._finish_incoming(message.transfer_id)
        elif isinstance(message, RequestChunk):
            await self._resend(peer_id, message)
        elif isinstance(message, TransferErrorMessage):
            self._fail(
                message.transfer_id,
                f"Peer reported an error: {message.message}",
                notify=False,
            )

    async def _accept_file(self, peer_id: str, info: FileInfo) -> None:
        if self._registry.get(info.transfer_id):
            logger.warning(f"Duplicate file-info for {info.transfer_id} ignored")
            return

        created_at = created_at_from_id(info.transfer_id) or int(time.time() * 1000)
        self._registry.add(
            Transfer(
                id=info.transfer_id,
                file_name=info.name,
                size=info.size,
                mime_type=info.mime_type,
                direction=TransferDirection.DOWNLOAD,
                peer_id=peer_id,
                chunk_size=info.chunk_size,
                total_chunks=info.total_chunks,
                created_at=created_at,
            )
        )
        if info.total_chunks != chunk_count(info.size, info.chunk_size):
            self._fail(
                info.transfer_id,
                f"file-info announces {info.total_chunks} chunks for {info.size} bytes",
                notify=True,
            )
            return

        self._incoming[info.transfer_id] = _Incoming(
            transfer_id=info.transfer_id,
            peer_id=peer_id,
            name=info.name,
            size=info.size,
            total_chunks=info.total_chunks,
        )
        logger.info(f"Receiving {info.name} ({info.size} bytes) from {peer_id}")

        channel = self._channels.get(peer_id)
        try:
            if channel is None:
                raise ChannelClosed(f"No open channel to {peer_id}")
            await channel.send_json(FileInfoReceived(transfer_id=info.transfer_id).to_dict())
        except ChannelClosed as e:
            self._fail(info.transfer_id, f"Connection lost: {e}", notify=False)

    async def _handle_chunk(self, peer_id: str, frame: bytes) -> None:
        try:
            chunk = decode_chunk(frame)
        except TransferProtocolError as e:
            logger.warning(f"Undecodable chunk from {peer_id}: {e}")
            return

        try:
            await self._store_chunk(peer_id, chunk)
        except ChannelClosed:
            raise
        except Exception as e:
            logger.exception(f"Failed handling chunk {chunk.index} of {chunk.transfer_id}")
            self._fail(chunk.transfer_id, f"Could not process chunk {chunk.index}: {e}", notify=True)

    async def _store_chunk(self, peer_id: str, chunk) -> None:
        incoming = self._incoming.get(chunk.transfer_id)
        if incoming is None or incoming.peer_id != peer_id:
            logger.debug(f"Chunk {chunk.index} for inactive transfer {chunk.transfer_id}")
            return

        if chunk.total_chunks != incoming.total_chunks or not 0 <= chunk.index < incoming.total_chunks:
            self._fail(
                chunk.transfer_id,
                f"Corrupted chunk {chunk.index}/{chunk.total_chunks} "
                f"(expected {incoming.total_chunks} chunks)",
                notify=True,
            )
            return

        previous = incoming.chunks.get(chunk.index)
        if previous is not None:
            incoming.received -= len(previous)
        incoming.chunks[chunk.index] = chunk.data
        incoming.received += len(chunk.data)

        current = self._registry.get(chunk.transfer_id)
        bytes_moved = max(current.bytes_moved, min(incoming.size, incoming.received))
        self._record_progress(
            chunk.transfer_id,
            bytes_moved,
            incoming.sampler.sample(bytes_moved),
            status=TransferStatus.TRANSFERRING,
        )

        if incoming.size > 0 and bytes_moved >= incoming.size:
            await self._finish_incoming(chunk.transfer_id)

    async def _finish_incoming(self, transfer_id: str) -> None:
        incoming = self._incoming.pop(transfer_id, None)
        if incoming is None:
            return

        try:
            data = reassemble(incoming.chunks, incoming.total_chunks)
        except MissingChunksError as e:
            self._fail(
                transfer_id,
                f"Transfer ended with {len(e.missing)} missing chunk(s)",
                notify=True,
            )
            return
        finally:
            incoming.chunks = {}

        try:
            path = await self._writer.save(incoming.name, data)
        except (OSError, ValueError) as e:
            self._fail(transfer_id, f"Could not save {incoming.name}: {e}", notify=True)
            return

        self._registry.update(
            transfer_id,
            status=TransferStatus.COMPLETED,
            bytes_moved=incoming.size,
            progress_percent=100,
            eta_seconds=0.0,
            saved_path=path,
        )
        logger.info(f"Received {incoming.name} from {incoming.peer_id} -> {path}")

    def missing_chunks(self, transfer_id: str) -> list[int]:
        """Indexes not yet received for an active download."""
        incoming = self._incoming.get(transfer_id)
        if incoming is None:
            raise TransferStateError(f"{transfer_id} is not an active download")
        return missing_indexes(incoming.chunks, incoming.total_chunks)

    async def request_missing(self, transfer_id: str) -> list[int]:
        """Ask the sender to resend every absent index once."""
        missing = self.missing_chunks(transfer_id)
        incoming = self._incoming[transfer_id]
        channel = self._channels.get(incoming.peer_id)
        if channel is None:
            raise ChannelClosed(f"No open channel to {incoming.peer_id}")
        for index in missing:
            await channel.send_json(
                RequestChunk(transfer_id=transfer_id, index=index).to_dict()
            )
        logger.info(f"Requested {len(missing)} missing chunk(s) for {transfer_id}")
        return missing

    # --- Failure handling ---

    def _handle_channel_lost(self, peer_id: str) -> None:
        bound = [
            tid for tid, state in list(self._incoming.items()) + list(self._outgoing.items())
            if state.peer_id == peer_id
        ]
        failed = [tid for tid in bound if self._fail(tid, f"Connection to {peer_id} lost", notify=False)]
        if failed:
            logger.warning(f"Channel to {peer_id} lost with {len(failed)} transfer(s) in flight")

    def _fail(self, transfer_id: str, message: str, notify: bool) -> bool:
        """Mark a transfer as errored. Returns False if it had already ended."""
        self._incoming.pop(transfer_id, None)
        outgoing = self._outgoing.pop(transfer_id, None)
        if outgoing and not outgoing.ack.done():
            outgoing.ack.set_result(False)
        eviction = self._evictions.pop(transfer_id, None)
        if eviction:
            eviction.cancel()

        transfer = self._registry.get(transfer_id)
        if transfer is None or transfer.is_terminal:
            return False
        self._registry.update(transfer_id, status=TransferStatus.ERROR, error_message=message)
        logger.error(f"Transfer {transfer_id} ({transfer.file_name}) failed: {message}")

        if notify:
            self._spawn(self._notify_peer(transfer.peer_id, transfer_id, message))
        return True

    async def _notify_peer(self, peer_id: str, transfer_id: str, message: str) -> None:
        channel = self._channels.get(peer_id)
        if channel is None:
            return
        try:
            await channel.send_json(
                TransferErrorMessage(transfer_id=transfer_id, message=message).to_dict()
            )
        except ChannelClosed as e:
            logger.debug(f"Could not report error for {transfer_id}: {e}")

    # --- Helpers ---

    def _record_progress(self, transfer_id: str, bytes_moved: int, speed: float, **extra) -> Transfer:
        transfer = self._registry.get(transfer_id)
        return self._registry.update(
            transfer_id,
            bytes_moved=bytes_moved,
            speed=speed,
            eta_seconds=estimate_eta(transfer.size - bytes_moved, speed),
            progress_percent=progress_percent(bytes_moved, transfer.size),
            **extra,
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
