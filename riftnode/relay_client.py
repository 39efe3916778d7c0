"""Packet relay through the beacon for peers that cannot be reached directly.

Relay packets are laid out as::

    "RIFT" | session id length (u32 little-endian) | session id (UTF-8) | payload

The payload is already encrypted end to end; the beacon only forwards it.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import struct
from ipaddress import IPv4Address

log = logging.getLogger(__name__)

MAGIC = b"RIFT"
_HEADER = struct.Struct("<4sI")


class RelayPacketError(ValueError):
    """A relay packet could not be understood."""


def encode_relay_packet(session_id: str, payload: bytes) -> bytes:
    """Frame ``payload`` for the relay session ``session_id``."""
    sid = session_id.encode("utf-8")
    return _HEADER.pack(MAGIC, len(sid)) + sid + bytes(payload)


def decode_relay_packet(data: bytes) -> tuple[str, bytes]:
    """Split a relay packet into its session id and payload."""
    if len(data) < _HEADER.size:
        raise RelayPacketError("Packet too small")
    magic, sid_len = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise RelayPacketError("Invalid magic")
    end = _HEADER.size + sid_len
    if len(data) < end:
        raise RelayPacketError("Malformed packet")
    try:
        session_id = bytes(data[_HEADER.size:end]).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise RelayPacketError(f"Invalid session id: {exc}") from exc
    return session_id, bytes(data[end:])


def _same_endpoint(a: tuple, b: tuple) -> bool:
    if a[1] != b[1]:
        return False
    try:
        return ipaddress.ip_address(a[0]) == ipaddress.ip_address(b[0])
    except ValueError:
        return a[0] == b[0]


class _RelayProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.inbox.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        log.error("Relay socket recv error: %s", exc)


class RelayClient:
    """Sends and receives peer traffic through the beacon's relay port."""

    def __init__(
        self,
        transport: asyncio.DatagramTransport,
        protocol: _RelayProtocol,
        beacon_relay_addr: tuple[str, int],
        packet_queue: asyncio.Queue,
    ) -> None:
        self._transport = transport
        self._protocol = protocol
        self.beacon_relay_addr = beacon_relay_addr
        self.packet_queue = packet_queue
        self._sessions: dict[IPv4Address, str] = {}

    @classmethod
    async def create(
        cls,
        bind_addr: tuple[str, int],
        beacon_relay_addr: tuple[str, int],
        packet_queue: asyncio.Queue,
    ) -> RelayClient:
        """Bind the relay socket; received payloads go to ``packet_queue``
        as ``(payload, peer_ip)`` pairs."""
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            _RelayProtocol, local_addr=bind_addr
        )
        log.info("Relay client bound to %s", transport.get_extra_info("sockname"))
        return cls(transport, protocol, beacon_relay_addr, packet_queue)

    def add_session(self, peer_ip: IPv4Address | str, session_id: str) -> None:
        """Route traffic for ``peer_ip`` through relay session ``session_id``."""
        ip = IPv4Address(peer_ip)
        self._sessions[ip] = session_id
        log.info("Added relay session %s for peer %s", session_id, ip)

    def remove_session(self, peer_ip: IPv4Address | str) -> None:
        ip = IPv4Address(peer_ip)
        if self._sessions.pop(ip, None) is not None:
            log.info("Removed relay session for peer %s", ip)

    def has_session(self, peer_ip: IPv4Address | str) -> bool:
        return IPv4Address(peer_ip) in self._sessions

    async def send_to_peer(self, peer_ip: IPv4Address | str, data: bytes) -> None:
        """Send ``data`` to ``peer_ip`` via the beacon; KeyError if no session."""
        ip = IPv4Address(peer_ip)
        try:
            session_id = self._sessions[ip]
        except KeyError:
            raise KeyError(f"No relay session for {ip}") from None
        self._transport.sendto(
            encode_relay_packet(session_id, data), self.beacon_relay_addr
        )
        log.debug("Sent %d bytes to %s via relay", len(data), ip)

    async def handle_packet(self, data: bytes) -> None:
        """Decode one relay packet and queue its payload for the router."""
        session_id, payload = decode_relay_packet(data)
        peer_ip = self._peer_by_session(session_id)
        if peer_ip is None:
            raise RelayPacketError(f"Unknown session {session_id}")
        log.debug("Received %d bytes from %s via relay", len(payload), peer_ip)
        await self.packet_queue.put((payload, peer_ip))

    def _peer_by_session(self, session_id: str) -> IPv4Address | None:
        return next(
            (ip for ip, sid in self._sessions.items() if sid == session_id), None
        )

    async def run_receive_loop(self) -> None:
        """Handle packets from the beacon until cancelled."""
        while True:
            data, source = await self._protocol.inbox.get()
            if not _same_endpoint(source, self.beacon_relay_addr):
                log.debug("Ignoring packet from unexpected source %s", source)
                continue
            try:
                await self.handle_packet(data)
            except RelayPacketError as exc:
                log.warning("Error handling relay packet: %s", exc)

    def local_addr(self) -> tuple[str, int]:
        """The address the relay socket is bound to."""
        return self._transport.get_extra_info("sockname")[:2]

    def close(self) -> None:
        self._transport.close()