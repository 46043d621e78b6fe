"""Pydantic models for the signaling relay."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EnvelopeType(str, Enum):
    REGISTER = "register"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    DISCONNECT = "disconnect"


def _now_ms() -> int:
    return int(time.time() * 1000)


class Envelope(BaseModel):
    """One JSON message on a signaling link.

    The relay only looks inside `register`; every other kind is forwarded
    verbatim.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: EnvelopeType
    sender: str = Field(alias="from")
    to: str | None = None
    device_id: str | None = Field(default=None, alias="deviceId")
    device_name: str | None = Field(default=None, alias="deviceName")
    data: Any = None
    timestamp: int = Field(default_factory=_now_ms)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Envelope":
        return cls.model_validate_json(raw)


@dataclass
class SignalingLink:
    """A registered connection to another node's relay."""
    peer_id: str
    peer_name: str
    socket: Any
    outbound: bool = False
    registered_at: float = field(default_factory=time.time)


class LinkEventKind(str, Enum):
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"


class LinkEvent(BaseModel):
    kind: LinkEventKind
    peer_id: str
    peer_name: str = ""


class LinkInfo(BaseModel):
    """Read-only view of a SignalingLink for the API."""
    peer_id: str
    peer_name: str
    outbound: bool
    registered_at: float
