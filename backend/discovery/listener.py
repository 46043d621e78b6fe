"""
mDNS service listener.

Resolves announcements of the LAN File service type into ServiceRecords
and hands arrival/departure events to the presence registry.
"""

import asyncio
import logging
from typing import Callable

from zeroconf import IPVersion, ServiceListener, Zeroconf
from zeroconf.asyncio import AsyncServiceInfo

from discovery.models import DeviceFound, DeviceLeft, DiscoveryEvent, ServiceRecord

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT_MS = 3000
KNOWN_TXT_KEYS = {"id", "name", "appVersion", "deviceType", "os", "heartbeatPort", "signalingPort"}


def _decode_properties(properties: dict) -> dict[str, str]:
    decoded = {}
    for key, value in (properties or {}).items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="replace")
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        decoded[key] = value if value is not None else ""
    return decoded


def parse_service_info(info) -> ServiceRecord | None:
    """Turn a resolved ServiceInfo into a ServiceRecord, or None if unusable."""
    try:
        props = _decode_properties(info.properties)
        addresses = info.parsed_addresses(IPVersion.V4Only)
        instance = info.name.split(".", 1)[0] if info.name else ""

        return ServiceRecord(
            service_name=info.name,
            device_id=props.get("id") or info.name,
            device_name=props.get("name") or instance,
            addresses=addresses,
            port=int(props.get("signalingPort") or info.port or 0),
            heartbeat_port=int(props.get("heartbeatPort") or 0),
            app_version=props.get("appVersion", ""),
            device_type=props.get("deviceType", ""),
            platform=props.get("os", ""),
            capabilities={k: v for k, v in props.items() if k not in KNOWN_TXT_KEYS},
        )
    except (ValueError, AttributeError) as e:
        logger.warning(f"Error parsing service info for {getattr(info, 'name', '?')}: {e}")
        return None


class PresenceListener(ServiceListener):
    """Listener for mDNS service discovery."""

    def __init__(self, on_event: Callable[[DiscoveryEvent], None]):
        self.on_event = on_event
        self._tasks: set[asyncio.Task] = set()

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        logger.debug(f"Service added: {name}")
        self._spawn(self._resolve(zc, type_, name))

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        logger.debug(f"Service updated: {name}")
        self._spawn(self._resolve(zc, type_, name))

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        logger.debug(f"Service removed: {name}")
        self.on_event(DeviceLeft(service_name=name))

    def cancel(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, zc: Zeroconf, type_: str, name: str) -> None:
        try:
            info = AsyncServiceInfo(type_, name)
            if not await info.async_request(zc, RESOLVE_TIMEOUT_MS):
                logger.debug(f"Could not resolve {name} within {RESOLVE_TIMEOUT_MS}ms")
                return
        except Exception as e:
            # Transport hiccups must not stop browsing
            logger.warning(f"mDNS resolve failed for {name}: {e}")
            return

        record = parse_service_info(info)
        if record:
            self.on_event(DeviceFound(record=record))
