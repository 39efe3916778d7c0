"""UDP hole punching towards peers behind NAT."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time

log = logging.getLogger(__name__)

PUNCH_PACKET = b"RIFT_PUNCH"
DEFAULT_RESPONSE_TIMEOUT = 5.0


class _PunchProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.received: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.received.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        self.received.put_nowait(exc)


def _same_ip(a: str, b: str) -> bool:
    try:
        return ipaddress.ip_address(a) == ipaddress.ip_address(b)
    except ValueError:
        return a == b


class HolePuncher:
    """Opens a NAT mapping by sending packets from the local tunnel port.

    Both sides send towards each other's public endpoint; once both NAT
    mappings exist, traffic flows in both directions.
    """

    def __init__(
        self, local_port: int, response_timeout: float = DEFAULT_RESPONSE_TIMEOUT
    ) -> None:
        self.local_port = local_port
        self.response_timeout = response_timeout

    async def punch(
        self, peer_addr: tuple[str, int], packet_count: int, interval: float
    ) -> bool:
        """Send ``packet_count`` punch packets ``interval`` seconds apart.

        Returns True if the first reply comes from the peer's IP address,
        False if none arrives in time or it comes from elsewhere.
        """
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            _PunchProtocol, local_addr=("0.0.0.0", self.local_port)
        )
        try:
            log.debug(
                "Hole punching from %s to %s",
                transport.get_extra_info("sockname"),
                peer_addr,
            )
            for i in range(packet_count):
                transport.sendto(PUNCH_PACKET, peer_addr)
                log.debug("Sent punch packet %d to %s", i + 1, peer_addr)
                if i < packet_count - 1:
                    await asyncio.sleep(interval)

            try:
                item = await asyncio.wait_for(
                    protocol.received.get(), self.response_timeout
                )
            except asyncio.TimeoutError:
                log.debug("No response received (timeout)")
                return False

            if isinstance(item, Exception):
                log.debug("Receive error: %s", item)
                return False

            data, source = item
            log.debug("Received %d bytes from %s", len(data), source)
            if _same_ip(source[0], peer_addr[0]):
                log.info("Hole punch successful - received response from peer")
                return True
            return False
        finally:
            transport.close()


async def coordinated_punch(
    local_port: int,
    peer_addr: tuple[str, int],
    punch_at_ms: int,
    packet_count: int,
    interval_ms: int,
) -> bool:
    """Wait until ``punch_at_ms`` (Unix milliseconds), then punch."""
    now_ms = int(time.time() * 1000)
    if punch_at_ms > now_ms:
        wait_ms = punch_at_ms - now_ms
        log.debug("Waiting %dms for coordinated punch", wait_ms)
        await asyncio.sleep(wait_ms / 1000)

    puncher = HolePuncher(local_port)
    return await puncher.punch(peer_addr, packet_count, interval_ms / 1000)