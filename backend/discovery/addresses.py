"""IPv4 address filtering and local interface lookup."""

import ipaddress
import logging
import socket
from typing import Iterable

logger = logging.getLogger(__name__)

# Host-only and container bridges that never reach another machine
VIRTUAL_NETWORKS = [
    ipaddress.ip_network("192.168.56.0/24"),  # VirtualBox host-only
    ipaddress.ip_network("192.168.99.0/24"),  # docker-machine
    ipaddress.ip_network("172.17.0.0/16"),  # docker0 bridge
]


def is_usable_ipv4(address: str) -> bool:
    """True if the address is a routable LAN IPv4 address."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False

    if ip.version != 4:
        return False
    if (
        ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_multicast
        or ip.is_reserved
    ):
        return False
    return not any(ip in net for net in VIRTUAL_NETWORKS)


def filter_ipv4(addresses: Iterable[str]) -> set[str]:
    return {addr for addr in addresses if is_usable_ipv4(addr)}


def local_ipv4_addresses() -> list[str]:
    """Best-effort list of this host's usable IPv4 addresses."""
    found: list[str] = []

    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        found.extend(ips)
    except OSError as e:
        logger.debug(f"gethostbyname_ex failed: {e}")

    # Route lookup towards a multicast group; no packet leaves the host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("224.0.0.251", 5353))
            found.append(s.getsockname()[0])
    except OSError as e:
        logger.debug(f"Multicast route lookup failed: {e}")

    usable: list[str] = []
    for addr in found:
        if is_usable_ipv4(addr) and addr not in usable:
            usable.append(addr)
    return usable
