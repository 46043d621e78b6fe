"""REST API routes for LAN File."""

import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError

from config import DISCOVERY_SCAN_TIMEOUT
from connection.channel import ChannelClosed
from connection.establisher import NegotiationFailed
from connection.models import FailureReason
from node import DeviceUnavailable, LanFileNode
from signaling.relay import SignalingError, SignalingTimeout
from transfer.models import TransferRequest
from transfer.registry import TransferStateError, deduplicate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_node(request: Request) -> LanFileNode:
    return request.app.state.node


def _connect_error(device_id: str, e: Exception) -> HTTPException:
    """Map a connect failure to an HTTP error the UI can show."""
    if isinstance(e, DeviceUnavailable):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SignalingTimeout):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, SignalingError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, NegotiationFailed):
        status = 504 if e.reason == FailureReason.TIMEOUT else 502
        return HTTPException(
            status_code=status,
            detail={"device_id": device_id, "reason": e.reason.value, "message": e.message},
        )
    return HTTPException(status_code=500, detail=str(e))


# --- Device Discovery ---

@router.get("/devices")
async def list_devices(node: LanFileNode = Depends(get_node)):
    """Return this node and every device seen so far."""
    return {
        "local": node.presence.local_device.model_dump(mode="json"),
        "devices": [d.model_dump(mode="json") for d in node.presence.get_devices()],
    }


@router.post("/devices/scan")
async def scan_devices(
    timeout: float = Query(DISCOVERY_SCAN_TIMEOUT, gt=0, le=30),
    node: LanFileNode = Depends(get_node),
):
    """Browse for a bounded window and return what answered."""
    devices = await node.presence.scan(timeout=timeout)
    return {"devices": [d.model_dump(mode="json") for d in devices]}


class NicknameBody(BaseModel):
    nickname: str | None = None


@router.post("/devices/{device_id}/nickname")
async def set_nickname(device_id: str, body: NicknameBody, node: LanFileNode = Depends(get_node)):
    try:
        device = node.presence.set_nickname(device_id, body.nickname)
    except KeyError:
        raise HTTPException(status_code=404, detail="Device not found")
    return {"device": device.model_dump(mode="json")}


@router.post("/devices/{device_id}/check")
async def check_device(device_id: str, node: LanFileNode = Depends(get_node)):
    """Probe the device's heartbeat endpoint now."""
    device = node.presence.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    status = await node.presence.check_liveness(device)
    return {"device_id": device_id, "status": status.value}


# --- Connections ---

@router.get("/connections")
async def list_connections(node: LanFileNode = Depends(get_node)):
    return {
        "links": [link.model_dump(mode="json") for link in node.relay.get_links()],
        "sessions": [s.model_dump(mode="json") for s in node.establisher.get_sessions()],
    }


@router.post("/connections/{device_id}")
async def connect_device(device_id: str, node: LanFileNode = Depends(get_node)):
    """Open signaling and a data channel to a device."""
    try:
        await node.connect_device(device_id)
    except (DeviceUnavailable, SignalingError, NegotiationFailed) as e:
        logger.warning(f"Connecting to {device_id} failed: {e}")
        raise _connect_error(device_id, e)
    return {"device_id": device_id, "state": node.establisher.get_state(device_id).value}


@router.delete("/connections/{device_id}")
async def disconnect_device(device_id: str, node: LanFileNode = Depends(get_node)):
    await node.disconnect_device(device_id)
    return {"device_id": device_id, "state": node.establisher.get_state(device_id).value}


# --- Transfers ---

@router.get("/transfers")
async def list_transfers(
    dedupe: bool = Query(True),
    node: LanFileNode = Depends(get_node),
):
    """Return all transfers (active + finished)."""
    transfers = node.transfers.list_transfers()
    if dedupe:
        transfers = deduplicate(transfers)
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


@router.post("/transfers")
async def create_transfer(body: TransferRequest, node: LanFileNode = Depends(get_node)):
    """Send files, read straight from disk, to a device."""
    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    try:
        transfers = await node.send_files(body.device_id, valid_paths)
    except (DeviceUnavailable, SignalingError, NegotiationFailed) as e:
        logger.warning(f"Cannot send to {body.device_id}: {e}")
        raise _connect_error(body.device_id, e)
    except ChannelClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OSError as e:
        raise HTTPException(status_code=400, detail=f"Cannot read file: {e}")

    return {
        "transfers": [t.model_dump(mode="json") for t in transfers],
        "message": f"Queued {len(transfers)} file(s) for transfer",
    }


@router.post("/transfers/{transfer_id}/request-missing")
async def request_missing(transfer_id: str, node: LanFileNode = Depends(get_node)):
    """Ask the sender to resend chunks that have not arrived."""
    if node.transfers.get(transfer_id) is None:
        raise HTTPException(status_code=404, detail="Transfer not found")
    try:
        requested = await node.engine.request_missing(transfer_id)
    except (TransferStateError, ChannelClosed) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"transfer_id": transfer_id, "requested": requested}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None
    chunk_size: int | None = None


@router.get("/settings")
async def get_settings(node: LanFileNode = Depends(get_node)):
    return node.settings.model_dump()


@router.put("/settings")
async def update_settings(body: SettingsBody, node: LanFileNode = Depends(get_node)):
    settings = node.settings
    try:
        if body.chunk_size is not None:
            settings.chunk_size = body.chunk_size
        if body.save_dir is not None:
            if not os.path.isdir(body.save_dir):
                try:
                    os.makedirs(body.save_dir, exist_ok=True)
                except OSError as e:
                    raise HTTPException(
                        status_code=400, detail=f"Invalid directory: {e}"
                    )
            settings.save_dir = body.save_dir
        if body.device_name is not None:
            await node.rename(body.device_name)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "updated", "settings": settings.model_dump()}
