"""Pydantic models for peer discovery."""

from enum import Enum

from pydantic import BaseModel, Field


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class Device(BaseModel):
    """A peer known to the presence registry.

    Records are never removed. A device that disappears is marked offline so
    it keeps its identity and nickname when it comes back.
    """
    id: str
    display_name: str
    nickname: str | None = None
    addresses: set[str] = Field(default_factory=set)
    discovery_port: int = 0
    heartbeat_port: int = 0
    signaling_port: int = 0
    platform: str = ""
    device_type: str = ""
    app_version: str = ""
    capabilities: dict[str, str] = Field(default_factory=dict)
    service_name: str = ""
    last_seen: float = 0.0
    status: DeviceStatus = DeviceStatus.ONLINE
    is_local: bool = False

    @property
    def name(self) -> str:
        return self.nickname or self.display_name

    @property
    def primary_address(self) -> str | None:
        if not self.addresses:
            return None
        return sorted(self.addresses)[0]


class ServiceRecord(BaseModel):
    """What a peer advertises over mDNS (instance, port and TXT attributes)."""
    service_name: str
    device_id: str
    device_name: str
    addresses: list[str] = Field(default_factory=list)
    port: int  # signaling port
    heartbeat_port: int = 0
    app_version: str = ""
    device_type: str = ""
    platform: str = ""
    capabilities: dict[str, str] = Field(default_factory=dict)  # unrecognised TXT keys


class DiscoveryEventKind(str, Enum):
    DEVICE_FOUND = "device_found"
    DEVICE_LEFT = "device_left"
    DEVICE_STATUS = "device_status"


class DeviceFound(BaseModel):
    """Raw arrival announcement from the browser."""
    kind: DiscoveryEventKind = DiscoveryEventKind.DEVICE_FOUND
    record: ServiceRecord


class DeviceLeft(BaseModel):
    """Raw departure announcement; mDNS only tells us the instance name."""
    kind: DiscoveryEventKind = DiscoveryEventKind.DEVICE_LEFT
    service_name: str


DiscoveryEvent = DeviceFound | DeviceLeft


class DeviceEvent(BaseModel):
    """Registry-level change pushed to observers."""
    kind: DiscoveryEventKind
    device: Device
