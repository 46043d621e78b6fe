"""Chunk arithmetic, reassembly and throughput estimation."""

import math
import time
from typing import Callable, Iterator


class MissingChunksError(Exception):
    def __init__(self, missing: list[int]):
        super().__init__(f"Missing chunk indexes: {missing[:10]}{'...' if len(missing) > 10 else ''}")
        self.missing = missing


def chunk_count(size: int, chunk_size: int) -> int:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return math.ceil(size / chunk_size)


def split_chunks(data: bytes, chunk_size: int) -> Iterator[bytes]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    for offset in range(0, len(data), chunk_size):
        yield data[offset:offset + chunk_size]


def read_chunk(path: str, index: int, chunk_size: int) -> bytes:
    """Blocking read of one slice; run via asyncio.to_thread."""
    with open(path, "rb") as f:
        f.seek(index * chunk_size)
        return f.read(chunk_size)


def missing_indexes(chunks: dict[int, bytes], total_chunks: int) -> list[int]:
    return [i for i in range(total_chunks) if i not in chunks]


def reassemble(chunks: dict[int, bytes], total_chunks: int) -> bytes:
    """Concatenate chunks by ascending index; every index must be present."""
    missing = missing_indexes(chunks, total_chunks)
    if missing:
        raise MissingChunksError(missing)
    return b"".join(chunks[i] for i in range(total_chunks))


def progress_percent(bytes_moved: int, size: int, completed: bool = False) -> int:
    if size <= 0:
        return 100 if completed else 0
    return max(0, min(100, (100 * bytes_moved) // size))


def estimate_eta(remaining: int, speed: float) -> float:
    if speed <= 0:
        return 0.0
    return max(0, remaining) / speed


class ThroughputSampler:
    """Instantaneous speed from the last two samples (Δbytes / Δtime)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._last_time = clock()
        self._last_bytes = 0
        self.speed = 0.0

    def sample(self, total_bytes: int) -> float:
        now = self._clock()
        elapsed = now - self._last_time
        if elapsed <= 0:
            self.speed = 0.0
        else:
            self.speed = max(0, total_bytes - self._last_bytes) / elapsed
        self._last_time = now
        self._last_bytes = total_bytes
        return self.speed
