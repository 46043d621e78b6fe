"""Pydantic models for connection negotiation."""

from enum import Enum

from pydantic import BaseModel

from connection.ice import Candidate


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class LocalRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    ICE = "ice"


class ConnectionEvent(BaseModel):
    """State change of the negotiation/channel toward one peer."""
    peer_id: str
    state: ChannelState
    session_id: str | None = None
    role: LocalRole | None = None
    failure_reason: FailureReason | None = None
    message: str | None = None


class SessionInfo(BaseModel):
    """Read-only view of a negotiation session for the API."""
    peer_id: str
    session_id: str
    local_role: LocalRole
    channel_state: ChannelState
    failure_reason: FailureReason | None = None
    local_candidates: list[Candidate] = []
    remote_candidates: list[Candidate] = []
    created_at: float
