"""
LAN File node.

Builds the presence registry, heartbeat endpoint, signaling relay,
connection establisher and transfer engine once, wires their events
together, and exposes the operations the HTTP API needs.
"""

import logging

from config import (
    APP_VERSION,
    DEVICE_ID,
    DEVICE_TYPE,
    HEARTBEAT_PORT,
    PLATFORM,
    SIGNALING_PORT,
)
from connection.channel import DataChannel
from connection.establisher import ConnectionEstablisher
from discovery.addresses import local_ipv4_addresses
from discovery.heartbeat import HeartbeatServer
from discovery.models import Device
from discovery.service import PresenceRegistry
from settings import Settings
from signaling.relay import SignalingError, SignalingRelay
from transfer.engine import TransferEngine
from transfer.models import Transfer
from transfer.registry import TransferRegistry
from transfer.storage import DestinationWriter

logger = logging.getLogger(__name__)


class DeviceUnavailable(Exception):
    """The device is unknown or has no address to reach it on."""


class LanFileNode:
    """One participant on the LAN: discovery, signaling, channels, transfers."""

    def __init__(
        self,
        settings: Settings,
        device_id: str = DEVICE_ID,
        host: str = "0.0.0.0",
        heartbeat_port: int = HEARTBEAT_PORT,
        signaling_port: int = SIGNALING_PORT,
        candidate_hosts: list[str] | None = None,
        presence: PresenceRegistry | None = None,
    ) -> None:
        self.settings = settings
        self.device_id = device_id

        self.heartbeat = HeartbeatServer(heartbeat_port, host)
        self.relay = SignalingRelay(host, signaling_port)
        self.presence = presence or PresenceRegistry(local_device=self._local_device())
        self.establisher = ConnectionEstablisher(
            self.relay, device_id, candidate_hosts=candidate_hosts, bind_host=host
        )
        self.transfers = TransferRegistry()
        self.writer = DestinationWriter(settings)
        self.engine = TransferEngine(self.transfers, self.writer, settings)

        self.establisher.on_channel_open(self.engine.attach_channel)

    def _local_device(self) -> Device:
        return Device(
            id=self.device_id,
            display_name=self.settings.device_name,
            addresses=set(local_ipv4_addresses()),
            heartbeat_port=self.heartbeat.port,
            signaling_port=self.relay.port,
            discovery_port=self.relay.port,
            platform=PLATFORM,
            device_type=DEVICE_TYPE,
            app_version=APP_VERSION,
            is_local=True,
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        self.settings.ensure_save_dir()
        await self.heartbeat.start()
        await self.relay.start(self.device_id, self.settings.device_name)
        await self.presence.start()
        # Ports are only known once the listeners are bound
        await self.presence.publish(self._local_device())
        logger.info(
            f"Node {self.settings.device_name} ({self.device_id}) up: "
            f"signaling {self.relay.port}, heartbeat {self.heartbeat.port}"
        )

    async def stop(self) -> None:
        await self.engine.stop()
        await self.establisher.stop()
        await self.relay.stop()
        await self.presence.stop()
        await self.heartbeat.stop()
        logger.info("Node stopped")

    async def rename(self, device_name: str) -> None:
        """Change the advertised device name and re-publish."""
        self.settings.device_name = device_name
        self.relay.local_name = self.settings.device_name
        await self.presence.publish(self._local_device())

    # --- Peers ---

    async def connect_device(self, device_id: str) -> DataChannel:
        """Link signaling to a discovered device and open a data channel.

        Raises DeviceUnavailable, SignalingError/SignalingTimeout or
        NegotiationFailed.
        """
        channel = self.establisher.get_channel(device_id)
        if channel and not channel.closed:
            await self.engine.attach_channel(device_id, channel)
            return channel

        device = self.presence.get_device(device_id)
        if device is None or device.is_local:
            raise DeviceUnavailable(f"Unknown device {device_id}")
        if not self.relay.is_linked(device_id):
            address = device.primary_address
            if address is None or not device.signaling_port:
                raise DeviceUnavailable(f"{device.name} has no reachable address")
            linked_id = await self.relay.connect(device_id, address, device.signaling_port)
            if linked_id != device_id:
                await self.relay.disconnect(linked_id)
                raise SignalingError(f"{address} answered as {linked_id}, not {device_id}")

        channel = await self.establisher.connect(device_id)
        await self.engine.attach_channel(device_id, channel)
        return channel

    async def disconnect_device(self, device_id: str) -> None:
        await self.establisher.close(device_id)
        await self.relay.disconnect(device_id)

    async def send_files(self, device_id: str, file_paths: list[str]) -> list[Transfer]:
        """Connect if needed and start one upload per path."""
        await self.connect_device(device_id)
        return [await self.engine.start_send(device_id, path) for path in file_paths]
