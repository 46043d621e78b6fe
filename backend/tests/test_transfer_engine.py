"""Tests for the chunked transfer engine over a real channel pair."""

import asyncio
import json
import os
import random
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from connection.channel import ChannelClosed
from settings import Settings
from transfer.engine import TransferEngine
from transfer.models import TransferDirection, TransferStatus
from transfer.protocol import decode_chunk, encode_chunk
from transfer.registry import TransferEventKind, TransferRegistry, TransferStateError
from transfer.storage import DestinationWriter

TRANSFER_ID = "1700000000000-abcdefghi"


def make_engine(tmp_path, name: str, chunk_size: int = 16384, **kwargs) -> TransferEngine:
    settings = Settings(device_name=name, save_dir=str(tmp_path / name), chunk_size=chunk_size)
    return TransferEngine(TransferRegistry(), DestinationWriter(settings), settings, **kwargs)


def file_info(
    size: int, chunk_size: int, total_chunks: int, name: str = "data.bin", transfer_id: str = TRANSFER_ID
) -> dict:
    return {
        "type": "file-info",
        "transferId": transfer_id,
        "name": name,
        "size": size,
        "mimeType": "application/octet-stream",
        "chunkSize": chunk_size,
        "totalChunks": total_chunks,
    }


async def receive_json(channel, timeout: float = 2.0) -> dict:
    return json.loads(await asyncio.wait_for(channel.receive(), timeout))


@pytest_asyncio.fixture
async def receiver(tmp_path, channel_pair):
    """(engine on node-b attached to its channel, raw channel held by node-a)"""
    raw, theirs = channel_pair
    engine = make_engine(tmp_path, "receiver")
    await engine.attach_channel("node-a", theirs)
    yield engine, raw
    await engine.stop()


@pytest_asyncio.fixture
async def sender(tmp_path, channel_pair):
    """(engine on node-a attached to its channel, raw channel held by node-b)"""
    ours, raw = channel_pair
    engine = make_engine(tmp_path, "sender", chunk_size=4, ack_timeout=1.0)
    await engine.attach_channel("node-b", ours)
    yield engine, raw
    await engine.stop()


class TestEngineToEngine:
    """Tests for two engines talking to each other"""

    @pytest.mark.asyncio
    async def test_one_mebibyte_file(self, tmp_path, channel_pair, wait_until):
        """A 1 MiB file travels as 64 chunks and is saved byte-identical"""
        chan_a, chan_b = channel_pair
        sender = make_engine(tmp_path, "a")
        receiver = make_engine(tmp_path, "b")
        await sender.attach_channel("node-b", chan_a)
        await receiver.attach_channel("node-a", chan_b)

        progress = []
        receiver.registry.subscribe(
            lambda e: progress.append(e.transfer.bytes_moved)
            if e.kind == TransferEventKind.PROGRESS else None
        )

        payload = random.Random(1).randbytes(1024 * 1024)
        source = tmp_path / "report.pdf"
        source.write_bytes(payload)

        try:
            upload = await asyncio.wait_for(sender.send_file("node-b", str(source)), 10.0)

            assert upload.status == TransferStatus.COMPLETED
            assert upload.total_chunks == 64
            assert upload.bytes_moved == len(payload)
            assert upload.mime_type == "application/pdf"

            await wait_until(
                lambda: receiver.registry.list_transfers()
                and receiver.registry.list_transfers()[0].is_terminal
            )
            download = receiver.registry.get(upload.id)
            assert download.direction == TransferDirection.DOWNLOAD
            assert download.status == TransferStatus.COMPLETED
            assert download.progress_percent == 100
            assert download.peer_id == "node-a"
            with open(download.saved_path, "rb") as f:
                assert f.read() == payload

            assert progress == sorted(progress)
            assert progress[-1] == len(payload)
        finally:
            await sender.stop()
            await receiver.stop()

    @pytest.mark.asyncio
    async def test_zero_byte_file(self, tmp_path, channel_pair, wait_until):
        """An empty file completes on file-complete"""
        chan_a, chan_b = channel_pair
        sender = make_engine(tmp_path, "a")
        receiver = make_engine(tmp_path, "b")
        await sender.attach_channel("node-b", chan_a)
        await receiver.attach_channel("node-a", chan_b)
        source = tmp_path / "empty.txt"
        source.write_bytes(b"")

        try:
            upload = await asyncio.wait_for(sender.send_file("node-b", str(source)), 5.0)
            assert upload.status == TransferStatus.COMPLETED
            assert upload.total_chunks == 0

            await wait_until(lambda: (receiver.registry.get(upload.id) or upload).saved_path)
            download = receiver.registry.get(upload.id)
            assert download.status == TransferStatus.COMPLETED
            assert os.path.getsize(download.saved_path) == 0
        finally:
            await sender.stop()
            await receiver.stop()

    @pytest.mark.asyncio
    async def test_concurrent_transfers_share_channel(self, tmp_path, channel_pair, wait_until):
        chan_a, chan_b = channel_pair
        sender = make_engine(tmp_path, "a", chunk_size=1000)
        receiver = make_engine(tmp_path, "b")
        await sender.attach_channel("node-b", chan_a)
        await receiver.attach_channel("node-a", chan_b)

        paths = []
        for i in range(3):
            path = tmp_path / f"file{i}.bin"
            path.write_bytes(bytes([i]) * (5000 + i))
            paths.append(str(path))

        try:
            uploads = await asyncio.wait_for(
                asyncio.gather(*(sender.send_file("node-b", p) for p in paths)), 10.0
            )
            assert all(u.status == TransferStatus.COMPLETED for u in uploads)
            await wait_until(
                lambda: all(t.status == TransferStatus.COMPLETED for t in receiver.registry.list_transfers())
                and len(receiver.registry.list_transfers()) == 3
            )
            for upload in uploads:
                download = receiver.registry.get(upload.id)
                with open(download.saved_path, "rb") as f:
                    assert len(f.read()) == upload.size
        finally:
            await sender.stop()
            await receiver.stop()


class TestReceiving:
    """Tests for the receiving side driven by a raw peer"""

    @pytest.mark.asyncio
    async def test_out_of_order_chunks(self, receiver, wait_until):
        """Chunks arriving shuffled and duplicated reassemble in index order"""
        engine, raw = receiver
        payload = bytes(range(256)) * 4
        chunks = [payload[i:i + 100] for i in range(0, len(payload), 100)]

        await raw.send_json(file_info(len(payload), 100, len(chunks)))
        ack = await receive_json(raw)
        assert ack == {"type": "file-info-received", "transferId": TRANSFER_ID}

        order = list(range(len(chunks)))
        random.Random(7).shuffle(order)
        order.insert(3, order[0])
        for index in order:
            await raw.send_binary(encode_chunk(TRANSFER_ID, index, len(chunks), chunks[index]))
        await raw.send_json({"type": "file-complete", "transferId": TRANSFER_ID})

        await wait_until(lambda: engine.registry.get(TRANSFER_ID).is_terminal)
        transfer = engine.registry.get(TRANSFER_ID)
        assert transfer.status == TransferStatus.COMPLETED
        with open(transfer.saved_path, "rb") as f:
            assert f.read() == payload

    @pytest.mark.asyncio
    async def test_missing_chunk_fails(self, receiver, wait_until):
        """file-complete with a hole ends in error and tells the sender"""
        engine, raw = receiver
        await raw.send_json(file_info(300, 100, 3))
        await receive_json(raw)
        await raw.send_binary(encode_chunk(TRANSFER_ID, 0, 3, b"a" * 100))
        await raw.send_binary(encode_chunk(TRANSFER_ID, 2, 3, b"c" * 100))
        await raw.send_json({"type": "file-complete", "transferId": TRANSFER_ID})

        error = await receive_json(raw)
        assert error["type"] == "transfer-error"
        assert error["transferId"] == TRANSFER_ID

        transfer = engine.registry.get(TRANSFER_ID)
        assert transfer.status == TransferStatus.ERROR
        assert "missing" in transfer.error_message
        assert transfer.saved_path is None

    @pytest.mark.asyncio
    async def test_corrupted_chunk_fails(self, receiver):
        """A chunk whose total disagrees with file-info is rejected"""
        engine, raw = receiver
        await raw.send_json(file_info(300, 100, 3))
        await receive_json(raw)
        await raw.send_binary(encode_chunk(TRANSFER_ID, 0, 7, b"a" * 100))

        error = await receive_json(raw)
        assert error["type"] == "transfer-error"
        assert engine.registry.get(TRANSFER_ID).status == TransferStatus.ERROR

    @pytest.mark.asyncio
    async def test_inconsistent_file_info(self, receiver):
        engine, raw = receiver
        await raw.send_json(file_info(300, 100, 5))
        error = await receive_json(raw)
        assert error["type"] == "transfer-error"
        assert engine.registry.get(TRANSFER_ID).status == TransferStatus.ERROR

    @pytest.mark.asyncio
    async def test_bytes_moved_never_decreases(self, receiver, wait_until):
        """Duplicate chunks do not move progress backwards or past size"""
        engine, raw = receiver
        seen = []
        engine.registry.subscribe(lambda e: seen.append(e.transfer.bytes_moved))

        await raw.send_json(file_info(250, 100, 3))
        await receive_json(raw)
        for index, data in [(0, b"a" * 100), (0, b"a" * 100), (2, b"c" * 50), (1, b"b" * 100)]:
            await raw.send_binary(encode_chunk(TRANSFER_ID, index, 3, data))

        await wait_until(lambda: engine.registry.get(TRANSFER_ID).is_terminal)
        assert seen == sorted(seen)
        assert max(seen) == 250
        assert engine.registry.get(TRANSFER_ID).status == TransferStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_channel_lost_mid_transfer(self, receiver, wait_until):
        engine, raw = receiver
        await raw.send_json(file_info(300, 100, 3))
        await receive_json(raw)
        await raw.send_binary(encode_chunk(TRANSFER_ID, 0, 3, b"a" * 100))
        await raw.close()

        await wait_until(lambda: engine.registry.get(TRANSFER_ID).is_terminal)
        transfer = engine.registry.get(TRANSFER_ID)
        assert transfer.status == TransferStatus.ERROR
        assert "lost" in transfer.error_message
        assert not engine.has_channel("node-a")

    @pytest.mark.asyncio
    async def test_missing_chunks_and_request(self, receiver, wait_until):
        """The receiver can list and re-request absent indexes"""
        engine, raw = receiver
        await raw.send_json(file_info(400, 100, 4))
        await receive_json(raw)
        await raw.send_binary(encode_chunk(TRANSFER_ID, 0, 4, b"a" * 100))
        await raw.send_binary(encode_chunk(TRANSFER_ID, 2, 4, b"c" * 100))
        await wait_until(lambda: engine.registry.get(TRANSFER_ID).bytes_moved == 200)

        assert engine.missing_chunks(TRANSFER_ID) == [1, 3]
        assert await engine.request_missing(TRANSFER_ID) == [1, 3]

        requests = [await receive_json(raw), await receive_json(raw)]
        assert requests == [
            {"type": "request-chunk", "transferId": TRANSFER_ID, "index": 1},
            {"type": "request-chunk", "transferId": TRANSFER_ID, "index": 3},
        ]

    @pytest.mark.asyncio
    async def test_missing_chunks_unknown_transfer(self, receiver):
        engine, _ = receiver
        with pytest.raises(TransferStateError):
            engine.missing_chunks("nope")

    @pytest.mark.asyncio
    async def test_peer_error_fails_transfer(self, receiver, wait_until):
        engine, raw = receiver
        await raw.send_json(file_info(300, 100, 3))
        await receive_json(raw)
        await raw.send_json({"type": "transfer-error", "transferId": TRANSFER_ID, "message": "disk gone"})

        await wait_until(lambda: engine.registry.get(TRANSFER_ID).is_terminal)
        assert "disk gone" in engine.registry.get(TRANSFER_ID).error_message

    @pytest.mark.asyncio
    async def test_save_failure(self, tmp_path, channel_pair, wait_until):
        raw, theirs = channel_pair
        settings = Settings(device_name="b", save_dir=str(tmp_path), chunk_size=100)
        writer = MagicMock()
        writer.save = AsyncMock(side_effect=OSError("disk full"))
        engine = TransferEngine(TransferRegistry(), writer, settings)
        await engine.attach_channel("node-a", theirs)

        try:
            await raw.send_json(file_info(10, 100, 1))
            await receive_json(raw)
            await raw.send_binary(encode_chunk(TRANSFER_ID, 0, 1, b"x" * 10))

            error = await receive_json(raw)
            assert error["type"] == "transfer-error"
            transfer = engine.registry.get(TRANSFER_ID)
            assert transfer.status == TransferStatus.ERROR
            assert "disk full" in transfer.error_message
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_malformed_control_ignored(self, receiver, wait_until):
        engine, raw = receiver
        await raw.send_json({"type": "file-explode"})
        await raw.send_json(file_info(0, 100, 0))
        assert (await receive_json(raw))["type"] == "file-info-received"

    @pytest.mark.asyncio
    async def test_unsavable_name_fails_only_that_transfer(self, receiver):
        """A name the filesystem rejects errors the transfer and the channel keeps serving"""
        engine, raw = receiver
        await raw.send_json(file_info(10, 100, 1, name="a\x00b.bin"))
        await receive_json(raw)
        await raw.send_binary(encode_chunk(TRANSFER_ID, 0, 1, b"x" * 10))

        error = await receive_json(raw)
        assert error["type"] == "transfer-error"
        assert engine.registry.get(TRANSFER_ID).status == TransferStatus.ERROR

        await raw.send_json(file_info(0, 100, 0, name="next.txt", transfer_id="1700000000001-next"))
        assert (await receive_json(raw))["type"] == "file-info-received"
        assert engine.has_channel("node-a")

    @pytest.mark.asyncio
    async def test_non_ascii_digit_id_prefix(self, receiver, wait_until):
        """An id whose prefix is not an ASCII timestamp still gets a creation time"""
        engine, raw = receiver
        odd_id = "²-aaaa"
        await raw.send_json(file_info(3, 100, 1, transfer_id=odd_id))
        assert await receive_json(raw) == {"type": "file-info-received", "transferId": odd_id}
        await raw.send_binary(encode_chunk(odd_id, 0, 1, b"abc"))

        await wait_until(lambda: engine.registry.get(odd_id).is_terminal)
        transfer = engine.registry.get(odd_id)
        assert transfer.status == TransferStatus.COMPLETED
        assert transfer.created_at > 0

    @pytest.mark.asyncio
    async def test_handler_failure_keeps_channel(self, receiver):
        """An unexpected error while handling a message fails only the keyed transfer"""
        engine, raw = receiver
        await raw.send_json(file_info(300, 100, 3))
        await receive_json(raw)

        engine._record_progress = MagicMock(side_effect=RuntimeError("boom"))
        await raw.send_binary(encode_chunk(TRANSFER_ID, 0, 3, b"a" * 100))

        error = await receive_json(raw)
        assert error["type"] == "transfer-error"
        assert "boom" in engine.registry.get(TRANSFER_ID).error_message

        await raw.send_json(file_info(0, 100, 0, transfer_id="1700000000001-next"))
        assert (await receive_json(raw))["type"] == "file-info-received"


class TestSending:
    """Tests for the sending side driven by a raw peer"""

    @pytest.mark.asyncio
    async def test_wire_sequence(self, sender, tmp_path):
        """file-info, then chunks after the ack, then file-complete"""
        engine, raw = sender
        source = tmp_path / "notes.txt"
        source.write_bytes(b"0123456789")

        upload = await engine.start_send("node-b", str(source))
        assert upload.status == TransferStatus.PENDING

        info = await receive_json(raw)
        assert info["type"] == "file-info"
        assert info["name"] == "notes.txt"
        assert info["size"] == 10
        assert info["chunkSize"] == 4
        assert info["totalChunks"] == 3
        assert info["mimeType"] == "text/plain"

        await raw.send_json({"type": "file-info-received", "transferId": info["transferId"]})
        chunks = [decode_chunk(await asyncio.wait_for(raw.receive(), 2.0)) for _ in range(3)]
        assert [c.index for c in chunks] == [0, 1, 2]
        assert b"".join(c.data for c in chunks) == b"0123456789"

        complete = await receive_json(raw)
        assert complete == {"type": "file-complete", "transferId": info["transferId"]}

    @pytest.mark.asyncio
    async def test_ack_timeout(self, sender, tmp_path):
        """No file-info-received within the window fails the upload"""
        engine, raw = sender
        source = tmp_path / "a.bin"
        source.write_bytes(b"abc")

        upload = await asyncio.wait_for(engine.send_file("node-b", str(source)), 5.0)

        assert upload.status == TransferStatus.ERROR
        assert "acknowledge" in upload.error_message
        assert (await receive_json(raw))["type"] == "file-info"
        assert (await receive_json(raw))["type"] == "transfer-error"

    @pytest.mark.asyncio
    async def test_resend_once(self, sender, tmp_path):
        """A requested chunk is resent once, repeats are ignored"""
        engine, raw = sender
        source = tmp_path / "b.bin"
        source.write_bytes(b"abcdefghij")
        await engine.start_send("node-b", str(source))

        info = await receive_json(raw)
        transfer_id = info["transferId"]
        await raw.send_json({"type": "file-info-received", "transferId": transfer_id})
        for _ in range(3):
            await raw.receive()
        await receive_json(raw)

        request = {"type": "request-chunk", "transferId": transfer_id, "index": 1}
        await raw.send_json(request)
        await raw.send_json(request)

        resent = decode_chunk(await asyncio.wait_for(raw.receive(), 2.0))
        assert (resent.index, resent.data) == (1, b"efgh")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(raw.receive(), 0.3)

    @pytest.mark.asyncio
    async def test_send_without_channel(self, tmp_path):
        engine = make_engine(tmp_path, "lonely")
        source = tmp_path / "c.bin"
        source.write_bytes(b"x")
        with pytest.raises(ChannelClosed):
            await engine.start_send("node-z", str(source))
        assert engine.registry.list_transfers() == []

    @pytest.mark.asyncio
    async def test_send_missing_file(self, sender, tmp_path):
        engine, _ = sender
        with pytest.raises(OSError):
            await engine.start_send("node-b", str(tmp_path / "gone.bin"))

    @pytest.mark.asyncio
    async def test_completed_upload_evicted_after_grace(self, tmp_path, channel_pair):
        """Completed uploads stop being resendable once the grace period ends"""
        ours, raw = channel_pair
        engine = make_engine(tmp_path, "sender", chunk_size=4, resend_grace=0.1)
        await engine.attach_channel("node-b", ours)
        source = tmp_path / "d.bin"
        source.write_bytes(b"abcdefghij")

        try:
            for _ in range(3):
                upload = await engine.start_send("node-b", str(source))
                info = await receive_json(raw)
                await raw.send_json({"type": "file-info-received", "transferId": info["transferId"]})
                for _ in range(4):
                    await asyncio.wait_for(raw.receive(), 2.0)
            await asyncio.sleep(0.3)

            assert engine._outgoing == {}
            await raw.send_json({"type": "request-chunk", "transferId": upload.id, "index": 1})
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(raw.receive(), 0.3)
            assert engine.registry.get(upload.id).status == TransferStatus.COMPLETED
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_channel_loss_leaves_completed_uploads(self, sender, tmp_path, wait_until, caplog):
        """Losing the channel fails only unfinished transfers"""
        engine, raw = sender
        source = tmp_path / "e.bin"
        source.write_bytes(b"abc")
        done = await engine.start_send("node-b", str(source))
        info = await receive_json(raw)
        await raw.send_json({"type": "file-info-received", "transferId": info["transferId"]})
        await asyncio.wait_for(raw.receive(), 2.0)
        await receive_json(raw)
        await wait_until(lambda: engine.registry.get(done.id).status == TransferStatus.COMPLETED)

        pending = await engine.start_send("node-b", str(source))
        await receive_json(raw)
        with caplog.at_level("WARNING", logger="transfer.engine"):
            await raw.close()
            await wait_until(lambda: engine.registry.get(pending.id).is_terminal)

        assert engine.registry.get(done.id).status == TransferStatus.COMPLETED
        assert engine.registry.get(pending.id).status == TransferStatus.ERROR
        assert "1 transfer(s) in flight" in caplog.text
