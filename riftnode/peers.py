"""The daemon's table of known peers and the bookkeeping done on it.

Times are monotonic seconds as from ``time.monotonic()``.
"""

from __future__ import annotations

import ipaddress
import logging
import time
from dataclasses import dataclass, field
from ipaddress import IPv4Address
from typing import Iterator

from riftnode.connection import ConnectionConfig, ConnectionState, StateKind

log = logging.getLogger(__name__)

Endpoint = tuple[str, int]


def _endpoint_key(endpoint: Endpoint) -> tuple[object, int]:
    host, port = endpoint[0], endpoint[1]
    try:
        return ipaddress.ip_address(host), int(port)
    except ValueError:
        return host, int(port)


@dataclass
class PeerConnection:
    """One peer in the mesh and the live state of the link to it."""

    peer_id: str
    public_key: str
    virtual_ip: IPv4Address
    name: str
    endpoint: Endpoint | None = None
    state: ConnectionState | None = None
    relay_session: str | None = None
    bytes_tx: int = 0
    bytes_rx: int = 0
    last_activity: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.virtual_ip = IPv4Address(self.virtual_ip)
        if self.state is None:
            self.state = ConnectionState(
                StateKind.DISCOVERED, discovered_at=time.monotonic()
            )

    def _record(self, count: int) -> None:
        if count < 0:
            raise ValueError(f"byte count must not be negative: {count}")
        self.last_activity = time.monotonic()

    def record_tx(self, count: int) -> None:
        """Count ``count`` bytes sent to the peer and mark it active."""
        self._record(count)
        self.bytes_tx += count

    def record_rx(self, count: int) -> None:
        """Count ``count`` bytes received from the peer and mark it active."""
        self._record(count)
        self.bytes_rx += count


class PeerTable:
    """Peers indexed by their virtual IP in the mesh."""

    def __init__(self, config: ConnectionConfig | None = None) -> None:
        self.config = config if config is not None else ConnectionConfig()
        self._peers: dict[IPv4Address, PeerConnection] = {}

    def __len__(self) -> int:
        return len(self._peers)

    def __iter__(self) -> Iterator[PeerConnection]:
        return iter(list(self._peers.values()))

    def __contains__(self, virtual_ip: object) -> bool:
        try:
            return IPv4Address(virtual_ip) in self._peers  # type: ignore[arg-type]
        except ValueError:
            return False

    def add_peer(self, peer: PeerConnection) -> PeerConnection:
        """Add ``peer``, replacing any peer with the same virtual IP."""
        self._peers[peer.virtual_ip] = peer
        log.info("Added peer %s (%s) at %s", peer.name, peer.virtual_ip, peer.endpoint)
        return peer

    def remove_peer(self, virtual_ip: IPv4Address | str) -> PeerConnection | None:
        """Remove and return the peer at ``virtual_ip``, if there is one."""
        peer = self._peers.pop(IPv4Address(virtual_ip), None)
        if peer is not None:
            log.info("Removed peer %s (%s)", peer.name, peer.virtual_ip)
        return peer

    def get_peer(self, virtual_ip: IPv4Address | str) -> PeerConnection | None:
        return self._peers.get(IPv4Address(virtual_ip))

    def list_peers(self) -> list[PeerConnection]:
        return list(self._peers.values())

    def find_by_endpoint(self, endpoint: Endpoint) -> PeerConnection | None:
        """The peer currently reached at ``endpoint``."""
        wanted = _endpoint_key(endpoint)
        return next(
            (
                peer
                for peer in self._peers.values()
                if peer.endpoint is not None and _endpoint_key(peer.endpoint) == wanted
            ),
            None,
        )

    def find_by_public_key(self, public_key: str) -> PeerConnection | None:
        """The peer holding ``public_key``."""
        return next(
            (peer for peer in self._peers.values() if peer.public_key == public_key),
            None,
        )

    def mark_dead_peers(self, now: float) -> list[PeerConnection]:
        """Move connected peers silent for too long to the disconnected state.

        Returns the peers that were marked.
        """
        dead = []
        for peer in self._peers.values():
            if (
                peer.state.is_connected()
                and now - peer.last_activity > self.config.dead_peer_timeout
            ):
                log.warning("Peer %s appears dead, marking disconnected", peer.name)
                peer.state = ConnectionState(
                    StateKind.DISCONNECTED,
                    disconnected_at=now,
                    retry_count=0,
                    next_retry=now + self.config.reconnect_base_delay,
                )
                dead.append(peer)
        return dead

    def due_reconnections(self, now: float) -> list[PeerConnection]:
        """Disconnected peers whose retry time has come.

        Each one's retry count is raised and its next retry pushed back by
        the backoff delay; the caller then starts a handshake with it.
        """
        due = []
        for peer in self._peers.values():
            state = peer.state
            if state.kind is not StateKind.DISCONNECTED or now < state.next_retry:
                continue
            log.info(
                "Attempting reconnection to %s (attempt %d)",
                peer.name,
                state.retry_count + 1,
            )
            delay = self.config.reconnect_delay(state.retry_count)
            peer.state = ConnectionState(
                StateKind.DISCONNECTED,
                disconnected_at=now,
                retry_count=state.retry_count + 1,
                next_retry=now + delay,
            )
            due.append(peer)
        return due

    def needs_rekey(self, now: float) -> list[PeerConnection]:
        """Connected peers whose last handshake is older than the rekey interval."""
        return [
            peer
            for peer in self._peers.values()
            if peer.state.kind is StateKind.CONNECTED
            and now - peer.state.last_handshake > self.config.rekey_interval
        ]