"""
Transfer registry.

The single authoritative table of transfers. Only the transfer engine
writes to it; everyone else subscribes to its event bus or reads
snapshots.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable

from pydantic import BaseModel

from transfer.models import (
    STATUS_ORDER,
    Transfer,
    TransferStatus,
    created_at_from_id,
)

logger = logging.getLogger(__name__)


class TransferStateError(Exception):
    """An update that would break a transfer's lifecycle rules."""


class TransferEventKind(str, Enum):
    NEW = "new"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class TransferEvent(BaseModel):
    kind: TransferEventKind
    transfer: Transfer


Subscriber = Callable[[TransferEvent], Awaitable[None] | None]


class TransferRegistry:
    """In-memory map of transfer_id -> Transfer with an event bus."""

    def __init__(self) -> None:
        self._transfers: dict[str, Transfer] = {}
        self._subscribers: list[Subscriber] = []
        self._tasks: set[asyncio.Task] = set()

    def get(self, transfer_id: str) -> Transfer | None:
        return self._transfers.get(transfer_id)

    def list_transfers(self) -> list[Transfer]:
        return sorted(self._transfers.values(), key=lambda t: (t.created_at, t.id))

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Add a subscriber (sync or async); returns its unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def add(self, transfer: Transfer) -> Transfer:
        if transfer.id in self._transfers:
            raise TransferStateError(f"Transfer {transfer.id} already exists")
        self._transfers[transfer.id] = transfer
        self._publish(TransferEventKind.NEW, transfer)
        return transfer

    def update(self, transfer_id: str, **changes) -> Transfer:
        current = self._transfers.get(transfer_id)
        if current is None:
            raise TransferStateError(f"Unknown transfer {transfer_id}")
        if current.is_terminal:
            raise TransferStateError(
                f"Transfer {transfer_id} is already {current.status.value}"
            )

        status = TransferStatus(changes.get("status", current.status))
        if STATUS_ORDER[status] < STATUS_ORDER[current.status]:
            raise TransferStateError(
                f"Transfer {transfer_id} cannot go from {current.status.value} to {status.value}"
            )
        bytes_moved = changes.get("bytes_moved", current.bytes_moved)
        if bytes_moved < current.bytes_moved:
            raise TransferStateError(f"bytes_moved of {transfer_id} cannot decrease")
        if bytes_moved > current.size:
            raise TransferStateError(f"bytes_moved of {transfer_id} exceeds file size")

        updated = current.model_copy(update=changes)
        self._transfers[transfer_id] = updated

        if updated.status == TransferStatus.COMPLETED:
            kind = TransferEventKind.COMPLETE
        elif updated.status == TransferStatus.ERROR:
            kind = TransferEventKind.ERROR
        else:
            kind = TransferEventKind.PROGRESS
        self._publish(kind, updated)
        return updated

    def _publish(self, kind: TransferEventKind, transfer: Transfer) -> None:
        event = TransferEvent(kind=kind, transfer=transfer)
        for cb in list(self._subscribers):
            try:
                result = cb(event)
            except Exception as e:
                logger.error(f"Transfer subscriber error: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_subscriber(result))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _await_subscriber(result: Awaitable[None]) -> None:
        try:
            await result
        except Exception as e:
            logger.error(f"Transfer subscriber error: {e}")


def deduplicate(transfers: Iterable[Transfer]) -> list[Transfer]:
    """Collapse records of the same (file_name, peer_id, direction).

    The most recently created record wins, except that an unfinished
    record never hides a completed one.
    """
    groups: dict[tuple, list[Transfer]] = {}
    for transfer in transfers:
        key = (transfer.file_name, transfer.peer_id, transfer.direction)
        groups.setdefault(key, []).append(transfer)

    kept = []
    for records in groups.values():
        records.sort(
            key=lambda t: (t.created_at or created_at_from_id(t.id), t.id),
            reverse=True,
        )
        winner = records[0]
        if not winner.is_terminal:
            completed = [t for t in records if t.status == TransferStatus.COMPLETED]
            if completed:
                winner = completed[0]
        kept.append(winner)

    kept.sort(key=lambda t: (t.created_at, t.id))
    return kept
