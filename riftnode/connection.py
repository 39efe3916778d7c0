"""Peer connection states and the timing rules of the connection lifecycle.

A peer moves through discovery, hole punching and the handshake to a
connected session, and falls back to the beacon's relay when a direct
path cannot be opened. Times are monotonic seconds as from
``time.monotonic()``; durations are seconds.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

_U32_MAX = 0xFFFFFFFF


class StateKind(Enum):
    """The phases of a peer connection."""

    DISCOVERED = "discovered"
    HOLE_PUNCHING = "hole_punching"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    RELAYED = "relayed"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


_REQUIRED_FIELDS: dict[StateKind, tuple[str, ...]] = {
    StateKind.DISCOVERED: ("discovered_at",),
    StateKind.HOLE_PUNCHING: ("started_at", "attempts"),
    StateKind.HANDSHAKING: ("started_at", "initiator"),
    StateKind.CONNECTED: ("connected_at", "last_handshake", "session_index", "direct"),
    StateKind.RELAYED: ("connected_at", "session_id"),
    StateKind.DISCONNECTED: ("disconnected_at", "retry_count", "next_retry"),
    StateKind.FAILED: ("reason",),
}


@dataclass(frozen=True)
class ConnectionState:
    """The state of one peer connection and the data that goes with it."""

    kind: StateKind
    discovered_at: float | None = None
    started_at: float | None = None
    attempts: int | None = None
    initiator: bool | None = None
    connected_at: float | None = None
    last_handshake: float | None = None
    session_index: int | None = None
    direct: bool | None = None
    session_id: str | None = None
    disconnected_at: float | None = None
    retry_count: int | None = None
    next_retry: float | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, StateKind):
            raise TypeError(f"kind must be a StateKind, not {self.kind!r}")
        missing = [
            name for name in _REQUIRED_FIELDS[self.kind] if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(
                f"{self.kind.value} state needs {', '.join(missing)}"
            )

    def is_connected(self) -> bool:
        """Whether traffic can flow, directly or through the relay."""
        return self.kind in (StateKind.CONNECTED, StateKind.RELAYED)

    def is_direct(self) -> bool:
        """Whether the peer is connected over a direct path."""
        return self.kind is StateKind.CONNECTED and bool(self.direct)

    def state_name(self) -> str:
        """Short name of the state as shown to users."""
        if self.kind is StateKind.CONNECTED and not self.direct:
            return "connected_relay"
        return self.kind.value


@dataclass(frozen=True)
class ConnectionConfig:
    """Timeouts and intervals governing peer connections, in seconds."""

    max_hole_punch_attempts: int = 5
    hole_punch_timeout: float = 10.0
    handshake_timeout: float = 5.0
    keepalive_interval: float = 25.0
    dead_peer_timeout: float = 180.0
    rekey_interval: float = 120.0
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0

    def reconnect_delay(self, retry_count: int) -> float:
        """Exponential backoff before the next reconnection attempt.

        The base delay doubles with each retry, capped at the maximum delay.
        """
        if retry_count < 0:
            raise ValueError(f"retry_count must not be negative: {retry_count}")
        factor = 2 ** retry_count if retry_count < 32 else _U32_MAX
        return min(self.reconnect_base_delay * factor, self.reconnect_max_delay)