"""Writes completed downloads into the save directory."""

import asyncio
import logging
import os

logger = logging.getLogger(__name__)


def safe_file_name(file_name: str) -> str:
    """Strip directory parts so a peer cannot write outside the save dir."""
    name = os.path.basename(file_name.replace("\\", "/")).strip()
    if name in ("", ".", ".."):
        return "received_file"
    return name


def unique_path(directory: str, file_name: str) -> str:
    """`name.ext`, then `name (1).ext`, `name (2).ext`, ... until unused."""
    base, ext = os.path.splitext(file_name)
    candidate = os.path.join(directory, file_name)
    counter = 1
    while os.path.exists(candidate):
        candidate = os.path.join(directory, f"{base} ({counter}){ext}")
        counter += 1
    return candidate


class DestinationWriter:
    """Persists a reassembled buffer under the configured save directory."""

    def __init__(self, settings) -> None:
        self._settings = settings

    @property
    def save_dir(self) -> str:
        return self._settings.save_dir

    async def save(self, file_name: str, data: bytes) -> str:
        """Write `data` and return the final path. OSError (or ValueError for an unusable name) propagates."""
        return await asyncio.to_thread(self._write, file_name, data)

    def _write(self, file_name: str, data: bytes) -> str:
        os.makedirs(self.save_dir, exist_ok=True)
        path = unique_path(self.save_dir, safe_file_name(file_name))
        # "xb" so a file that appeared after unique_path is never overwritten
        with open(path, "xb") as f:
            f.write(data)
        logger.info(f"Saved {len(data)} bytes to {path}")
        return path
