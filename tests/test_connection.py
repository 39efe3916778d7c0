import time

import pytest

from riftnode.connection import ConnectionConfig, ConnectionState, StateKind


def _connected(direct: bool) -> ConnectionState:
    now = time.monotonic()
    return ConnectionState(
        StateKind.CONNECTED,
        connected_at=now,
        last_handshake=now,
        session_index=1,
        direct=direct,
    )


def test_connection_state_names():
    state = ConnectionState(StateKind.DISCOVERED, discovered_at=time.monotonic())
    assert state.state_name() == "discovered"

    state = _connected(True)
    assert state.state_name() == "connected"
    assert state.is_connected()
    assert state.is_direct()


def test_default_config():
    config = ConnectionConfig()
    assert config.rekey_interval == 120.0
    assert config.keepalive_interval == 25.0


def test_default_config_remaining_values():
    config = ConnectionConfig()
    assert config.max_hole_punch_attempts == 5
    assert config.hole_punch_timeout == 10.0
    assert config.handshake_timeout == 5.0
    assert config.dead_peer_timeout == 180.0
    assert config.reconnect_base_delay == 1.0
    assert config.reconnect_max_delay == 60.0


def test_connected_through_relay():
    state = _connected(False)
    assert state.state_name() == "connected_relay"
    assert state.is_connected()
    assert not state.is_direct()


@pytest.mark.parametrize(
    "state, name, connected",
    [
        (ConnectionState(StateKind.HOLE_PUNCHING, started_at=0.0, attempts=1), "hole_punching", False),
        (ConnectionState(StateKind.HANDSHAKING, started_at=0.0, initiator=True), "handshaking", False),
        (ConnectionState(StateKind.RELAYED, connected_at=0.0, session_id="s-1"), "relayed", True),
        (
            ConnectionState(
                StateKind.DISCONNECTED, disconnected_at=0.0, retry_count=0, next_retry=1.0
            ),
            "disconnected",
            False,
        ),
        (ConnectionState(StateKind.FAILED, reason="auth failure"), "failed", False),
    ],
)
def test_other_states(state, name, connected):
    assert state.state_name() == name
    assert state.is_connected() is connected
    assert state.is_direct() is False


def test_missing_field_raises():
    with pytest.raises(ValueError, match="session_index"):
        ConnectionState(
            StateKind.CONNECTED, connected_at=0.0, last_handshake=0.0, direct=True
        )


def test_kind_must_be_state_kind():
    with pytest.raises(TypeError):
        ConnectionState("connected")


@pytest.mark.parametrize(
    "retry_count, expected",
    [(0, 1.0), (1, 2.0), (2, 4.0), (5, 32.0), (6, 60.0), (40, 60.0)],
)
def test_reconnect_delay_backoff(retry_count, expected):
    assert ConnectionConfig().reconnect_delay(retry_count) == expected


def test_reconnect_delay_never_exceeds_max():
    config = ConnectionConfig(reconnect_base_delay=3.0, reconnect_max_delay=10.0)
    delays = [config.reconnect_delay(n) for n in range(50)]
    assert max(delays) == 10.0
    assert delays == sorted(delays)


def test_reconnect_delay_negative_raises():
    with pytest.raises(ValueError):
        ConnectionConfig().reconnect_delay(-1)