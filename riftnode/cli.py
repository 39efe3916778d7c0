"""Command-line control of a running node daemon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from riftnode.ipc import (
    CommandKind,
    IpcClient,
    IpcCommand,
    IpcResponse,
    PeerStatus,
    ResponseKind,
    default_socket_path,
)

log = logging.getLogger(__name__)

DEFAULT_PID_FILE = Path("/var/run/rift/rift-node.pid")

_CTL_ACTIONS = {
    "status": CommandKind.STATUS,
    "peers": CommandKind.LIST_PEERS,
    "ping": CommandKind.PING,
    "reconnect": CommandKind.RECONNECT,
}


def build_parser() -> argparse.ArgumentParser:
    """The argument parser for the ``rift-node`` command."""
    parser = argparse.ArgumentParser(
        prog="rift-node", description="Rift mesh VPN node daemon"
    )
    commands = parser.add_subparsers(dest="command")

    stop = commands.add_parser("stop", help="Stop a running daemon")
    stop.add_argument(
        "--pid-file", type=Path, default=DEFAULT_PID_FILE, help="PID file path"
    )

    peers = commands.add_parser(
        "peers", help="List connected peers (requires running daemon)"
    )
    peers.add_argument("--socket", type=Path, default=None, help="IPC socket path")

    ctl = commands.add_parser("ctl", help="Control daemon via IPC")
    ctl.add_argument("--socket", type=Path, default=None, help="IPC socket path")
    ctl.add_argument("action", choices=list(_CTL_ACTIONS), help="Command to send")

    return parser


def _peer_row(virtual_ip: object, name: str, state: str, relay: str) -> str:
    return f"{str(virtual_ip):<16} {name:<20} {state:<12} {relay:<10}"


def _format_peer_list(peers: list[PeerStatus]) -> str:
    if not peers:
        return "No connected peers"
    lines = [_peer_row("VIRTUAL IP", "NAME", "STATE", "RELAY"), "-" * 60]
    lines.extend(
        _peer_row(peer.virtual_ip, peer.name, peer.state, "yes" if peer.relayed else "no")
        for peer in peers
    )
    return "\n".join(lines)


def format_response(response: IpcResponse) -> str:
    """The text shown to the user for a daemon's answer."""
    kind = response.kind
    if kind is ResponseKind.OK:
        return response.message if response.message is not None else "OK"
    if kind is ResponseKind.ERROR:
        return f"Error: {response.message}"
    if kind is ResponseKind.STATUS:
        status = response.status
        return "\n".join(
            [
                "Rift Node Status",
                "================",
                f"Node:            {status.node_name}",
                f"Virtual IP:      {status.virtual_ip}",
                "Beacon:          "
                + ("connected" if status.beacon_connected else "disconnected"),
                "Tunnel:          " + ("active" if status.tunnel_active else "inactive"),
                f"Connected peers: {status.peer_count}",
                f"Uptime:          {status.uptime_secs}s",
            ]
        )
    if kind is ResponseKind.PEER_LIST:
        return _format_peer_list(response.peers)
    if kind is ResponseKind.PEER_INFO:
        peer = response.peer
        if peer is None:
            return "Peer not found"
        return "\n".join(
            [
                f"Peer: {peer.name}",
                f"  Virtual IP:     {peer.virtual_ip}",
                f"  State:          {peer.state}",
                f"  Relayed:        {'true' if peer.relayed else 'false'}",
                f"  Bytes TX:       {peer.bytes_tx}",
                f"  Bytes RX:       {peer.bytes_rx}",
            ]
        )
    return "Daemon is running"


async def handle_ipc_command(socket_path: Path | str, command: IpcCommand) -> int:
    """Send ``command`` to the daemon and print its answer.

    Returns the process exit status: 1 if the daemon could not be reached.
    """
    client = IpcClient(socket_path)
    try:
        response = await client.send(command)
    except (OSError, ValueError, RuntimeError) as exc:
        print(f"Failed to communicate with daemon: {exc}", file=sys.stderr)
        print("Is the daemon running?", file=sys.stderr)
        return 1

    stream = sys.stderr if response.kind is ResponseKind.ERROR else sys.stdout
    print(format_response(response), file=stream)
    return 0


def write_pid_file(path: Path | str) -> int:
    """Write this process's PID to ``path``, creating its directory."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pid = os.getpid()
    path.write_text(f"{pid}\n")
    log.info("Wrote PID %d to %s", pid, path)
    return pid


def stop_daemon(pid_file: Path | str) -> int | None:
    """Send SIGTERM to the process named in ``pid_file``.

    Returns the PID signalled, or None where signals are not supported.
    """
    try:
        text = Path(pid_file).read_text()
    except OSError as exc:
        raise OSError(f"Failed to read PID file: {exc}") from exc

    try:
        pid = int(text.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid PID: {exc}") from exc

    if os.name != "posix":
        print("Stop command not supported on this platform")
        return None

    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as exc:
        raise OSError(f"Failed to send signal: {exc}") from exc
    print(f"Sent SIGTERM to PID {pid}")
    return pid


def main(argv: list[str] | None = None) -> int:
    """Entry point of the ``rift-node`` command; returns the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 2

    if args.command == "stop":
        try:
            stop_daemon(args.pid_file)
        except (OSError, ValueError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        return 0

    socket_path = args.socket if args.socket is not None else default_socket_path()
    if args.command == "peers":
        command = IpcCommand(CommandKind.LIST_PEERS)
    else:
        command = IpcCommand(_CTL_ACTIONS[args.action])
    return asyncio.run(handle_ipc_command(socket_path, command))


if __name__ == "__main__":
    sys.exit(main())