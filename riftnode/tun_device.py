"""Virtual interface configuration, IPv4 header helpers and route setup."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import sys
from dataclasses import dataclass, field
from ipaddress import IPv4Address

log = logging.getLogger(__name__)

DEFAULT_MTU = 1420
_IPV4_HEADER_LEN = 20
_PREFIX_RE = re.compile(r"\+?[0-9]+")


def _prefix_mask(prefix: int) -> int:
    if not 0 <= prefix <= 32:
        raise ValueError(f"netmask prefix out of range: {prefix}")
    if prefix == 0:
        return 0
    return (0xFFFFFFFF << (32 - prefix)) & 0xFFFFFFFF


def _as_ipv4(addr: IPv4Address | str | int) -> IPv4Address:
    return addr if isinstance(addr, IPv4Address) else IPv4Address(addr)


@dataclass
class TunConfig:
    """Settings for the mesh's virtual network interface."""

    name: str
    address: IPv4Address
    netmask: int
    mtu: int = field(default=DEFAULT_MTU)

    def __post_init__(self) -> None:
        self.address = _as_ipv4(self.address)
        _prefix_mask(self.netmask)

    def network(self) -> IPv4Address:
        """The network address of the interface's subnet."""
        return IPv4Address(int(self.address) & _prefix_mask(self.netmask))

    def netmask_addr(self) -> IPv4Address:
        """The prefix length written as a dotted netmask."""
        return IPv4Address(_prefix_mask(self.netmask))


def _ipv4_field(packet: bytes, offset: int) -> IPv4Address | None:
    if len(packet) < _IPV4_HEADER_LEN or packet[0] >> 4 != 4:
        return None
    return IPv4Address(bytes(packet[offset:offset + 4]))


def parse_ipv4_dst(packet: bytes) -> IPv4Address | None:
    """Destination address of an IPv4 packet, or None if it is not one."""
    return _ipv4_field(packet, 16)


def parse_ipv4_src(packet: bytes) -> IPv4Address | None:
    """Source address of an IPv4 packet, or None if it is not one."""
    return _ipv4_field(packet, 12)


def is_in_network(
    addr: IPv4Address | str, network: IPv4Address | str, netmask: int
) -> bool:
    """Whether ``addr`` lies in ``network``/``netmask``."""
    mask = _prefix_mask(netmask)
    return (int(_as_ipv4(addr)) & mask) == (int(_as_ipv4(network)) & mask)


def parse_netmask(virtual_network: str) -> int:
    """Prefix length of a CIDR string such as ``10.99.0.0/16``."""
    parts = virtual_network.split("/")
    if len(parts) != 2:
        raise ValueError(f"Invalid virtual_network format: {virtual_network}")
    text = parts[1]
    if not _PREFIX_RE.fullmatch(text) or int(text) > 255:
        raise ValueError(f"Invalid netmask: {text!r}")
    return int(text)


def route_command(config: TunConfig, system: str) -> list[str] | None:
    """The command that routes the virtual network through the interface.

    ``system`` is a platform name as in ``sys.platform``; None is returned
    where no route command is known.
    """
    cidr = f"{config.network()}/{config.netmask}"
    if system.startswith("linux"):
        return ["ip", "route", "add", cidr, "dev", config.name]
    if system == "darwin":
        return ["route", "-n", "add", "-net", cidr, "-interface", config.name]
    return None


async def configure_routes(config: TunConfig) -> bool:
    """Add the route for the virtual network on this system.

    Returns True when the route is in place (added or already present),
    False when the command failed or the platform has no route command.
    """
    command = route_command(config, sys.platform)
    if command is None:
        return False

    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace")
        if "File exists" not in message:
            log.warning("Failed to add route: %s", message)
            return False

    log.info(
        "Routes configured for %s/%s via %s",
        config.network(),
        config.netmask,
        config.name,
    )
    return True