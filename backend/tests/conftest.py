"""
Shared pytest fixtures for LAN File tests.

Provides:
- An isolated config directory (set before any project module is imported)
- Settings pointing at a temporary save directory
- A connected pair of data channels over localhost TCP
- A polling helper for conditions reached on the event loop
"""

import asyncio
import os
import sys
import tempfile
import time
from pathlib import Path

import pytest
import pytest_asyncio

_TEST_HOME = tempfile.mkdtemp(prefix="lanfile-tests-")
os.environ.setdefault("LANFILE_CONFIG_DIR", os.path.join(_TEST_HOME, "config"))
os.environ.setdefault("LANFILE_SAVE_DIR", os.path.join(_TEST_HOME, "downloads"))
os.environ.setdefault("LANFILE_DEVICE_NAME", "Test Node")

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from connection.channel import DataChannel  # noqa: E402
from settings import Settings  # noqa: E402


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        device_name="Test Node",
        save_dir=str(tmp_path / "downloads"),
        chunk_size=16384,
    )


@pytest_asyncio.fixture
async def channel_pair():
    """(channel held by node-a, channel held by node-b), connected to each other."""
    accepted: asyncio.Future = asyncio.get_running_loop().create_future()

    async def on_connection(reader, writer):
        accepted.set_result((reader, writer))

    server = await asyncio.start_server(on_connection, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    reader_a, writer_a = await asyncio.open_connection("127.0.0.1", port)
    reader_b, writer_b = await accepted
    server.close()

    side_a = DataChannel("node-b", reader_a, writer_a)
    side_b = DataChannel("node-a", reader_b, writer_b)
    yield side_a, side_b

    await side_a.close()
    await side_b.close()


async def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """Await until predicate() is truthy or fail the test."""
    return _wait_until
