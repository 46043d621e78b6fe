"""Pydantic models for file transfer."""

import random
import string
import time
from enum import Enum

from pydantic import BaseModel


class TransferStatus(str, Enum):
    """All possible states for a file transfer."""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({TransferStatus.COMPLETED, TransferStatus.ERROR})

# Allowed forward moves; anything else is a backward transition
STATUS_ORDER = {
    TransferStatus.PENDING: 0,
    TransferStatus.TRANSFERRING: 1,
    TransferStatus.COMPLETED: 2,
    TransferStatus.ERROR: 2,
}


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class Transfer(BaseModel):
    """Full state of a single file transfer, exposed to the frontend."""
    id: str
    file_name: str
    size: int
    mime_type: str = "application/octet-stream"
    direction: TransferDirection
    peer_id: str
    status: TransferStatus = TransferStatus.PENDING
    bytes_moved: int = 0
    chunk_size: int
    total_chunks: int
    speed: float = 0.0
    eta_seconds: float = 0.0
    progress_percent: int = 0
    created_at: int
    saved_path: str | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TransferRequest(BaseModel):
    """API body for initiating a transfer."""
    device_id: str
    file_paths: list[str]


def new_transfer_id() -> str:
    """`<epoch-millis>-<random>`; the prefix orders transfers by creation."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


def created_at_from_id(transfer_id: str) -> int:
    """Creation time in epoch millis encoded in a transfer id (0 if absent)."""
    prefix = transfer_id.split("-", 1)[0]
    return int(prefix) if prefix.isascii() and prefix.isdigit() else 0
