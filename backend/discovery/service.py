"""
mDNS-based presence registry.

Publishes this node as a `_lanfile._tcp` service, browses for other nodes,
and keeps every device ever seen in a table whose status is driven by both
push announcements and a periodic heartbeat poll.
"""

import asyncio
import logging
import socket
import time
from typing import AsyncIterator, Awaitable, Callable

from zeroconf import IPVersion, ServiceInfo
from zeroconf.asyncio import AsyncServiceBrowser, AsyncZeroconf

from config import (
    DISCOVERY_SCAN_TIMEOUT,
    HEARTBEAT_TIMEOUT,
    RECONCILE_INTERVAL,
    SERVICE_TYPE,
)
from discovery.addresses import filter_ipv4
from discovery.heartbeat import probe
from discovery.listener import PresenceListener
from discovery.models import (
    Device,
    DeviceEvent,
    DeviceFound,
    DeviceLeft,
    DeviceStatus,
    DiscoveryEvent,
    DiscoveryEventKind,
    ServiceRecord,
)

logger = logging.getLogger(__name__)

DeviceCallback = Callable[[DeviceEvent], Awaitable[None]]
ProbeFn = Callable[[str, int, float], Awaitable[bool]]


class PresenceRegistry:
    """Owns the device table; everything else reads it through this class."""

    def __init__(
        self,
        local_device: Device,
        service_type: str = SERVICE_TYPE,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
        reconcile_interval: float = RECONCILE_INTERVAL,
        probe_fn: ProbeFn = probe,
    ) -> None:
        self.local_device = local_device.model_copy(update={"is_local": True})
        self._service_type = service_type
        self._heartbeat_timeout = heartbeat_timeout
        self._reconcile_interval = reconcile_interval
        self._probe = probe_fn

        self._devices: dict[str, Device] = {}
        self._callbacks: list[DeviceCallback] = []
        self._subscribers: set[asyncio.Queue] = set()
        self._pending: set[asyncio.Task] = set()

        self._zeroconf: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._listener: PresenceListener | None = None
        self._service_info: ServiceInfo | None = None
        self._reconcile_task: asyncio.Task | None = None

    # --- Lifecycle ---

    async def start(self) -> None:
        """Open the mDNS socket, start browsing and the reconciliation loop."""
        self._ensure_zeroconf()
        await self.start_browsing()
        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        logger.info("Presence registry started")

    async def stop(self) -> None:
        if self._reconcile_task:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None

        await self.stop_browsing()
        await self.unpublish()

        if self._zeroconf:
            await self._zeroconf.async_close()
            self._zeroconf = None

        for task in self._pending:
            task.cancel()
        self._pending.clear()
        logger.info("Presence registry stopped")

    def _ensure_zeroconf(self) -> AsyncZeroconf:
        if self._zeroconf is None:
            self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
        return self._zeroconf

    # --- Publishing ---

    async def publish(self, device: Device | None = None) -> None:
        """Advertise this node. Re-publishing replaces the previous record."""
        if device is not None:
            self.local_device = device.model_copy(update={"is_local": True})
        local = self.local_device
        zc = self._ensure_zeroconf()

        if self._service_info is not None:
            await zc.async_unregister_service(self._service_info)
            self._service_info = None

        instance = f"{local.display_name}-{local.id[:8]}"
        properties = {
            **local.capabilities,
            "id": local.id,
            "name": local.display_name,
            "appVersion": local.app_version,
            "deviceType": local.device_type,
            "os": local.platform,
            "heartbeatPort": str(local.heartbeat_port),
            "signalingPort": str(local.signaling_port),
        }
        info = ServiceInfo(
            self._service_type,
            f"{instance}.{self._service_type}",
            addresses=[socket.inet_aton(ip) for ip in sorted(local.addresses)],
            port=local.signaling_port,
            properties=properties,
            server=f"{socket.gethostname()}.local.",
        )

        await zc.async_register_service(info, allow_name_change=True)
        self._service_info = info
        logger.info(
            f"Published {local.display_name} ({', '.join(sorted(local.addresses)) or 'no address'})"
            f" signaling:{local.signaling_port} heartbeat:{local.heartbeat_port}"
        )

    async def unpublish(self) -> None:
        if self._service_info and self._zeroconf:
            await self._zeroconf.async_unregister_service(self._service_info)
            logger.info("Withdrew mDNS service record")
        self._service_info = None

    # --- Browsing ---

    @property
    def browsing(self) -> bool:
        return self._browser is not None

    async def start_browsing(self) -> None:
        if self._browser is not None:
            return
        zc = self._ensure_zeroconf()
        self._listener = PresenceListener(on_event=self.handle_discovery_event)
        self._browser = AsyncServiceBrowser(
            zc.zeroconf, self._service_type, listener=self._listener
        )
        logger.info(f"Browsing for {self._service_type}")

    async def stop_browsing(self) -> None:
        """Stop receiving announcements. Known devices are kept."""
        if self._browser:
            await self._browser.async_cancel()
            self._browser = None
        if self._listener:
            self._listener.cancel()
            self._listener = None

    async def browse(self) -> AsyncIterator[DiscoveryEvent]:
        """Yield arrival/departure events until the caller stops iterating."""
        await self.start_browsing()
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    async def scan(self, timeout: float = DISCOVERY_SCAN_TIMEOUT) -> list[Device]:
        """Browse for a bounded window and return the devices seen in it.

        The browser announces each service instance only once, so peers
        already online when the window opens count as seen.
        """
        seen: dict[str, Device] = {
            d.id: d for d in self._devices.values() if d.status == DeviceStatus.ONLINE
        }

        async def collect() -> None:
            async for event in self.browse():
                if isinstance(event, DeviceFound):
                    device = self.get_device(event.record.device_id)
                    if device:
                        seen[device.id] = device

        try:
            await asyncio.wait_for(collect(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return [self._devices.get(device_id, device) for device_id, device in seen.items()]

    def handle_discovery_event(self, event: DiscoveryEvent) -> None:
        """Apply a raw browser event to the table and fan it out."""
        try:
            if isinstance(event, DeviceFound):
                self.apply_found(event.record)
            elif isinstance(event, DeviceLeft):
                self.apply_left(event.service_name)
        except Exception as e:
            logger.warning(f"Ignoring discovery event {event!r}: {e}")
            return

        for queue in self._subscribers:
            queue.put_nowait(event)

    # --- Device table ---

    def get_devices(self) -> list[Device]:
        return list(self._devices.values())

    def get_device(self, device_id: str) -> Device | None:
        if device_id == self.local_device.id:
            return self.local_device
        return self._devices.get(device_id)

    def on_device_change(self, callback: DeviceCallback) -> None:
        """Register an async callback for DeviceEvents."""
        self._callbacks.append(callback)

    def apply_found(self, record: ServiceRecord, seen_at: float | None = None) -> Device | None:
        """Create or refresh the device behind an announcement."""
        if record.device_id == self.local_device.id:
            return None

        addresses = filter_ipv4(record.addresses)
        if not addresses:
            logger.debug(f"Ignoring {record.device_name}: no usable IPv4 address in {record.addresses}")
            return None

        seen_at = seen_at if seen_at is not None else time.time()
        device = self._devices.get(record.device_id)
        is_new = device is None

        if device is None:
            device = Device(id=record.device_id, display_name=record.device_name, last_seen=0.0)
            self._devices[device.id] = device

        device.display_name = record.device_name
        device.addresses = addresses
        device.signaling_port = record.port
        device.discovery_port = record.port
        device.heartbeat_port = record.heartbeat_port
        device.app_version = record.app_version
        device.device_type = record.device_type
        device.platform = record.platform
        device.capabilities = dict(record.capabilities)
        device.service_name = record.service_name

        was_offline = device.status == DeviceStatus.OFFLINE
        self._set_status(device, DeviceStatus.ONLINE, seen_at)
        device = self._merge_duplicates(device)

        if is_new:
            logger.info(f"Discovered device: {device.name} ({', '.join(sorted(device.addresses))})")
            self._emit(DiscoveryEventKind.DEVICE_FOUND, device)
        elif was_offline and device.status == DeviceStatus.ONLINE:
            logger.info(f"Device back online: {device.name}")
            self._emit(DiscoveryEventKind.DEVICE_FOUND, device)
        return device

    def apply_left(self, service_name: str, seen_at: float | None = None) -> Device | None:
        seen_at = seen_at if seen_at is not None else time.time()
        for device in self._devices.values():
            if device.service_name == service_name:
                if self._set_status(device, DeviceStatus.OFFLINE, seen_at):
                    logger.info(f"Device left: {device.name}")
                    self._emit(DiscoveryEventKind.DEVICE_LEFT, device)
                return device
        return None

    def set_nickname(self, device_id: str, nickname: str | None) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise KeyError(device_id)
        device.nickname = nickname.strip() if nickname and nickname.strip() else None
        self._emit(DiscoveryEventKind.DEVICE_STATUS, device)
        return device

    def _set_status(
        self, device: Device, status: DeviceStatus, seen_at: float, from_probe: bool = False
    ) -> bool:
        """Apply a status observation; the most recent one wins.

        On a timestamp tie a failed probe is authoritative for offline.
        Returns True if the status changed.
        """
        if seen_at < device.last_seen:
            return False
        if seen_at == device.last_seen and not (from_probe and status == DeviceStatus.OFFLINE):
            return False

        changed = device.status != status
        device.status = status
        if status == DeviceStatus.ONLINE or not from_probe:
            device.last_seen = seen_at
        return changed

    def _merge_duplicates(self, device: Device) -> Device:
        """Collapse records sharing an (address, display_name) pair."""
        for other in list(self._devices.values()):
            if other.id == device.id:
                continue
            if other.display_name != device.display_name:
                continue
            if not (other.addresses & device.addresses):
                continue

            keep, drop = (device, other) if device.last_seen >= other.last_seen else (other, device)
            keep.nickname = keep.nickname or drop.nickname
            del self._devices[drop.id]
            logger.info(f"Merged duplicate record {drop.id} into {keep.id} ({keep.display_name})")
            device = keep
        return device

    # --- Liveness ---

    async def check_liveness(self, device: Device) -> DeviceStatus:
        """Probe one device and record the result."""
        if device.is_local or device.id == self.local_device.id:
            return DeviceStatus.ONLINE

        started = time.time()
        address = device.primary_address
        alive = False
        if address and device.heartbeat_port:
            alive = await self._probe(address, device.heartbeat_port, self._heartbeat_timeout)

        status = DeviceStatus.ONLINE if alive else DeviceStatus.OFFLINE
        seen_at = time.time() if alive else started
        if self._set_status(device, status, seen_at, from_probe=True):
            logger.info(f"Heartbeat: {device.name} is now {status.value}")
            self._emit(DiscoveryEventKind.DEVICE_STATUS, device)
        return device.status

    async def reconcile(self) -> None:
        """Re-check every known device concurrently."""
        devices = self.get_devices()
        if not devices:
            return
        results = await asyncio.gather(
            *(self.check_liveness(d) for d in devices), return_exceptions=True
        )
        for device, result in zip(devices, results):
            if isinstance(result, Exception):
                logger.warning(f"Liveness check for {device.name} failed: {result}")
                if self._set_status(device, DeviceStatus.OFFLINE, time.time(), from_probe=True):
                    self._emit(DiscoveryEventKind.DEVICE_STATUS, device)

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reconcile_interval)
            try:
                await self.reconcile()
            except Exception as e:
                logger.warning(f"Reconciliation pass failed: {e}")

    # --- Events ---

    def _emit(self, kind: DiscoveryEventKind, device: Device) -> None:
        event = DeviceEvent(kind=kind, device=device.model_copy())
        for cb in self._callbacks:
            task = asyncio.ensure_future(self._run_callback(cb, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _run_callback(cb: DeviceCallback, event: DeviceEvent) -> None:
        try:
            await cb(event)
        except Exception as e:
            logger.error(f"Device event callback error: {e}")
