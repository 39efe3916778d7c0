import asyncio
import contextlib
import os
import signal
from ipaddress import IPv4Address
from pathlib import Path
from unittest import mock

import pytest

from riftnode.cli import (
    build_parser,
    format_response,
    handle_ipc_command,
    main,
    stop_daemon,
    write_pid_file,
)
from riftnode.ipc import (
    CommandKind,
    DaemonStatus,
    IpcCommand,
    IpcResponse,
    IpcServer,
    PeerStatus,
    ResponseKind,
)


def _status() -> DaemonStatus:
    return DaemonStatus(
        node_name="test-node",
        virtual_ip=IPv4Address("10.99.0.1"),
        beacon_connected=True,
        peer_count=5,
        uptime_secs=3600,
        tunnel_active=True,
    )


def _peer() -> PeerStatus:
    return PeerStatus(
        virtual_ip=IPv4Address("10.99.0.2"),
        name="peer1",
        state="connected",
        last_handshake=1234567890,
        bytes_tx=1024,
        bytes_rx=2048,
        relayed=False,
    )


def test_parser_ctl_action():
    args = build_parser().parse_args(["ctl", "ping"])
    assert args.command == "ctl"
    assert args.action == "ping"
    assert args.socket is None


def test_parser_stop_default_pid_file():
    args = build_parser().parse_args(["stop"])
    assert args.pid_file == Path("/var/run/rift/rift-node.pid")


def test_parser_rejects_unknown_action():
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args(["ctl", "explode"])
    assert excinfo.value.code == 2


def test_format_ok_without_message():
    assert format_response(IpcResponse(ResponseKind.OK)) == "OK"


def test_format_ok_with_message():
    response = IpcResponse(ResponseKind.OK, message="Reconnect initiated")
    assert format_response(response) == "Reconnect initiated"


def test_format_error():
    response = IpcResponse(ResponseKind.ERROR, message="Not implemented")
    assert format_response(response) == "Error: Not implemented"


def test_format_pong():
    assert format_response(IpcResponse(ResponseKind.PONG)) == "Daemon is running"


def test_format_status():
    text = format_response(IpcResponse(ResponseKind.STATUS, status=_status()))
    lines = text.splitlines()
    assert lines[0] == "Rift Node Status"
    assert "Node:            test-node" in lines
    assert "Virtual IP:      10.99.0.1" in lines
    assert "Beacon:          connected" in lines
    assert "Tunnel:          active" in lines
    assert "Connected peers: 5" in lines
    assert "Uptime:          3600s" in lines


def test_format_empty_peer_list():
    assert format_response(IpcResponse(ResponseKind.PEER_LIST)) == "No connected peers"


def test_format_peer_list():
    text = format_response(IpcResponse(ResponseKind.PEER_LIST, peers=[_peer()]))
    lines = text.splitlines()
    assert lines[0].split() == ["VIRTUAL", "IP", "NAME", "STATE", "RELAY"]
    assert lines[1] == "-" * 60
    assert lines[2].split() == ["10.99.0.2", "peer1", "connected", "no"]
    assert len(lines) == 3


def test_format_peer_info_missing():
    assert format_response(IpcResponse(ResponseKind.PEER_INFO)) == "Peer not found"


def test_format_peer_info():
    text = format_response(IpcResponse(ResponseKind.PEER_INFO, peer=_peer()))
    lines = text.splitlines()
    assert lines[0] == "Peer: peer1"
    assert lines[1].split() == ["Virtual", "IP:", "10.99.0.2"]
    assert lines[4].split()[-1] == "1024"
    assert lines[5].split()[-1] == "2048"


def test_write_pid_file_creates_directories(tmp_path):
    path = tmp_path / "run" / "rift" / "node.pid"
    pid = write_pid_file(path)
    assert pid == os.getpid()
    assert path.read_text() == f"{os.getpid()}\n"


def test_stop_daemon_sends_sigterm(tmp_path, capsys):
    pid_file = tmp_path / "node.pid"
    pid_file.write_text("4321\n")
    with mock.patch("riftnode.cli.os.kill") as kill:
        assert stop_daemon(pid_file) == 4321
    kill.assert_called_once_with(4321, signal.SIGTERM)
    assert "Sent SIGTERM to PID 4321" in capsys.readouterr().out


def test_stop_daemon_missing_file(tmp_path):
    with pytest.raises(OSError, match="Failed to read PID file"):
        stop_daemon(tmp_path / "absent.pid")


def test_stop_daemon_invalid_pid(tmp_path):
    pid_file = tmp_path / "node.pid"
    pid_file.write_text("not-a-pid\n")
    with pytest.raises(ValueError, match="Invalid PID"):
        stop_daemon(pid_file)


def test_stop_daemon_signal_failure(tmp_path):
    pid_file = tmp_path / "node.pid"
    pid_file.write_text("4321")
    with mock.patch("riftnode.cli.os.kill", side_effect=ProcessLookupError("gone")):
        with pytest.raises(OSError, match="Failed to send signal"):
            stop_daemon(pid_file)


def test_main_stop_reports_error(tmp_path, capsys):
    code = main(["stop", "--pid-file", str(tmp_path / "absent.pid")])
    assert code == 1
    assert "Failed to read PID file" in capsys.readouterr().err


def test_main_stop_success(tmp_path):
    pid_file = tmp_path / "node.pid"
    pid_file.write_text("4321")
    with mock.patch("riftnode.cli.os.kill") as kill:
        assert main(["stop", "--pid-file", str(pid_file)]) == 0
    kill.assert_called_once_with(4321, signal.SIGTERM)


def test_main_without_command():
    assert main([]) == 2


def test_main_peers_without_daemon(tmp_path, capsys):
    code = main(["peers", "--socket", str(tmp_path / "none.sock")])
    assert code == 1
    err = capsys.readouterr().err
    assert "Failed to communicate with daemon" in err
    assert "Is the daemon running?" in err


async def _serve_once(path, response):
    server = await IpcServer.bind(path)
    received = []

    async def handler(command):
        received.append(command)
        return response

    task = asyncio.create_task(server.run(handler))
    return server, task, received


async def _shutdown(server, task):
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    server.close()


@pytest.mark.asyncio
async def test_handle_ipc_command_status(tmp_path, capsys):
    path = tmp_path / "n.sock"
    server, task, received = await _serve_once(
        path, IpcResponse(ResponseKind.STATUS, status=_status())
    )
    try:
        code = await handle_ipc_command(path, IpcCommand(CommandKind.STATUS))
    finally:
        await _shutdown(server, task)
    assert code == 0
    assert received == [IpcCommand(CommandKind.STATUS)]
    assert "Node:            test-node" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_handle_ipc_command_error_goes_to_stderr(tmp_path, capsys):
    path = tmp_path / "n.sock"
    server, task, _ = await _serve_once(
        path, IpcResponse(ResponseKind.ERROR, message="Not implemented")
    )
    try:
        code = await handle_ipc_command(path, IpcCommand(CommandKind.RECONNECT))
    finally:
        await _shutdown(server, task)
    captured = capsys.readouterr()
    assert code == 0
    assert "Error: Not implemented" in captured.err
    assert captured.out == ""


@pytest.mark.asyncio
async def test_handle_ipc_command_unreachable(tmp_path, capsys):
    code = await handle_ipc_command(tmp_path / "none.sock", IpcCommand(CommandKind.PING))
    assert code == 1
    assert "Is the daemon running?" in capsys.readouterr().err