"""Control channel between the running daemon and command-line clients.

Commands and responses travel as one JSON document per line over a Unix
socket. Enum variants are written in the externally tagged form: a variant
without data is a bare string, a variant with data is a one-key object.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
from dataclasses import dataclass, field
from enum import Enum
from ipaddress import IPv4Address
from pathlib import Path
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)

_COMPACT = (",", ":")


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=_COMPACT)


def _loads(text: str) -> Any:
    try:
        return json.loads(text.strip())
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc}") from exc


def _field(data: Any, key: str) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"expected an object holding {key!r}")
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"missing field {key!r}") from None


def _typed(data: Any, key: str, kind: type | tuple[type, ...]) -> Any:
    value = _field(data, key)
    if isinstance(value, bool) and kind is int:
        raise ValueError(f"field {key!r} has the wrong type")
    if not isinstance(value, kind):
        raise ValueError(f"field {key!r} has the wrong type")
    return value


def _tagged(obj: Any) -> tuple[str, Any, bool]:
    """Split an externally tagged value into (tag, body, has_body)."""
    if isinstance(obj, str):
        return obj, None, False
    if isinstance(obj, dict) and len(obj) == 1:
        tag, body = next(iter(obj.items()))
        return tag, body, True
    raise ValueError("expected a variant name or a one-key object")


class CommandKind(Enum):
    """The commands a client may send to the daemon."""

    STATUS = "Status"
    LIST_PEERS = "ListPeers"
    GET_PEER = "GetPeer"
    ADD_PEER = "AddPeer"
    REMOVE_PEER = "RemovePeer"
    REQUEST_RELAY = "RequestRelay"
    RECONNECT = "Reconnect"
    PING = "Ping"
    SHUTDOWN = "Shutdown"


_UNIT_COMMANDS = frozenset(
    {
        CommandKind.STATUS,
        CommandKind.LIST_PEERS,
        CommandKind.RECONNECT,
        CommandKind.PING,
        CommandKind.SHUTDOWN,
    }
)
_IP_COMMANDS = frozenset(
    {CommandKind.GET_PEER, CommandKind.REMOVE_PEER, CommandKind.REQUEST_RELAY}
)


@dataclass(frozen=True)
class IpcCommand:
    """A command from a client to the daemon."""

    kind: CommandKind
    virtual_ip: IPv4Address | None = None
    public_key: str | None = None
    endpoint: str | None = None

    def __post_init__(self) -> None:
        if self.virtual_ip is not None and not isinstance(self.virtual_ip, IPv4Address):
            object.__setattr__(self, "virtual_ip", IPv4Address(self.virtual_ip))
        if self.kind in _IP_COMMANDS and self.virtual_ip is None:
            raise ValueError(f"{self.kind.value} needs a virtual_ip")
        if self.kind is CommandKind.ADD_PEER and self.public_key is None:
            raise ValueError("AddPeer needs a public_key")

    def to_json(self) -> str:
        """The command as a single line of JSON."""
        if self.kind in _UNIT_COMMANDS:
            return _dumps(self.kind.value)
        if self.kind in _IP_COMMANDS:
            return _dumps({self.kind.value: {"virtual_ip": str(self.virtual_ip)}})
        return _dumps(
            {
                self.kind.value: {
                    "public_key": self.public_key,
                    "endpoint": self.endpoint,
                }
            }
        )

    @classmethod
    def from_json(cls, text: str) -> IpcCommand:
        """Parse a command; raises ValueError if it is malformed."""
        tag, body, has_body = _tagged(_loads(text))
        try:
            kind = CommandKind(tag)
        except ValueError:
            raise ValueError(f"unknown command {tag!r}") from None

        if kind in _UNIT_COMMANDS:
            if has_body:
                raise ValueError(f"{tag} takes no data")
            return cls(kind)
        if not has_body:
            raise ValueError(f"{tag} needs data")
        if kind in _IP_COMMANDS:
            return cls(kind, virtual_ip=IPv4Address(_typed(body, "virtual_ip", str)))

        public_key = _typed(body, "public_key", str)
        endpoint = body.get("endpoint")
        if endpoint is not None and not isinstance(endpoint, str):
            raise ValueError("field 'endpoint' has the wrong type")
        return cls(kind, public_key=public_key, endpoint=endpoint)


@dataclass
class DaemonStatus:
    """Overall state of the running daemon."""

    node_name: str
    virtual_ip: IPv4Address
    beacon_connected: bool
    peer_count: int
    uptime_secs: int
    tunnel_active: bool

    def __post_init__(self) -> None:
        self.virtual_ip = IPv4Address(self.virtual_ip)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_name": self.node_name,
            "virtual_ip": str(self.virtual_ip),
            "beacon_connected": self.beacon_connected,
            "peer_count": self.peer_count,
            "uptime_secs": self.uptime_secs,
            "tunnel_active": self.tunnel_active,
        }

    @classmethod
    def from_dict(cls, data: Any) -> DaemonStatus:
        return cls(
            node_name=_typed(data, "node_name", str),
            virtual_ip=IPv4Address(_typed(data, "virtual_ip", str)),
            beacon_connected=_typed(data, "beacon_connected", bool),
            peer_count=_typed(data, "peer_count", int),
            uptime_secs=_typed(data, "uptime_secs", int),
            tunnel_active=_typed(data, "tunnel_active", bool),
        )


@dataclass
class PeerStatus:
    """State of one peer as reported by the daemon."""

    virtual_ip: IPv4Address
    name: str
    state: str
    last_handshake: int | None
    bytes_tx: int
    bytes_rx: int
    relayed: bool

    def __post_init__(self) -> None:
        self.virtual_ip = IPv4Address(self.virtual_ip)

    def to_dict(self) -> dict[str, Any]:
        return {
            "virtual_ip": str(self.virtual_ip),
            "name": self.name,
            "state": self.state,
            "last_handshake": self.last_handshake,
            "bytes_tx": self.bytes_tx,
            "bytes_rx": self.bytes_rx,
            "relayed": self.relayed,
        }

    @classmethod
    def from_dict(cls, data: Any) -> PeerStatus:
        last_handshake = data.get("last_handshake") if isinstance(data, dict) else None
        if last_handshake is not None and (
            isinstance(last_handshake, bool) or not isinstance(last_handshake, int)
        ):
            raise ValueError("field 'last_handshake' has the wrong type")
        return cls(
            virtual_ip=IPv4Address(_typed(data, "virtual_ip", str)),
            name=_typed(data, "name", str),
            state=_typed(data, "state", str),
            last_handshake=last_handshake,
            bytes_tx=_typed(data, "bytes_tx", int),
            bytes_rx=_typed(data, "bytes_rx", int),
            relayed=_typed(data, "relayed", bool),
        )


class ResponseKind(Enum):
    """The kinds of answer the daemon gives."""

    OK = "Ok"
    ERROR = "Error"
    STATUS = "Status"
    PEER_LIST = "PeerList"
    PEER_INFO = "PeerInfo"
    PONG = "Pong"


@dataclass
class IpcResponse:
    """An answer from the daemon to a client."""

    kind: ResponseKind
    message: str | None = None
    status: DaemonStatus | None = None
    peers: list[PeerStatus] = field(default_factory=list)
    peer: PeerStatus | None = None

    def __post_init__(self) -> None:
        if self.kind is ResponseKind.ERROR and self.message is None:
            raise ValueError("Error needs a message")
        if self.kind is ResponseKind.STATUS and self.status is None:
            raise ValueError("Status needs a DaemonStatus")
        self.peers = list(self.peers)

    def to_json(self) -> str:
        """The response as a single line of JSON."""
        tag = self.kind.value
        if self.kind is ResponseKind.PONG:
            return _dumps(tag)
        if self.kind in (ResponseKind.OK, ResponseKind.ERROR):
            body: Any = {"message": self.message}
        elif self.kind is ResponseKind.STATUS:
            body = self.status.to_dict()
        elif self.kind is ResponseKind.PEER_LIST:
            body = [peer.to_dict() for peer in self.peers]
        else:
            body = self.peer.to_dict() if self.peer is not None else None
        return _dumps({tag: body})

    @classmethod
    def from_json(cls, text: str) -> IpcResponse:
        """Parse a response; raises ValueError if it is malformed."""
        tag, body, has_body = _tagged(_loads(text))
        try:
            kind = ResponseKind(tag)
        except ValueError:
            raise ValueError(f"unknown response {tag!r}") from None

        if kind is ResponseKind.PONG:
            if has_body:
                raise ValueError("Pong takes no data")
            return cls(kind)
        if not has_body:
            raise ValueError(f"{tag} needs data")
        if kind is ResponseKind.OK:
            message = body.get("message") if isinstance(body, dict) else None
            if not isinstance(body, dict) or (
                message is not None and not isinstance(message, str)
            ):
                raise ValueError("malformed Ok response")
            return cls(kind, message=message)
        if kind is ResponseKind.ERROR:
            return cls(kind, message=_typed(body, "message", str))
        if kind is ResponseKind.STATUS:
            return cls(kind, status=DaemonStatus.from_dict(body))
        if kind is ResponseKind.PEER_LIST:
            if not isinstance(body, list):
                raise ValueError("PeerList needs a list")
            return cls(kind, peers=[PeerStatus.from_dict(item) for item in body])
        return cls(kind, peer=None if body is None else PeerStatus.from_dict(body))


def default_socket_path() -> Path:
    """Where the daemon listens for control connections."""
    if os.name == "posix":
        return Path("/var/run/rift/rift-node.sock")
    return Path(r"\\.\pipe\rift-node")


Handler = Callable[[IpcCommand], Awaitable[IpcResponse]]


def _require_unix() -> None:
    if not hasattr(socket, "AF_UNIX"):
        raise RuntimeError("IPC not supported on this platform")


class IpcServer:
    """Listens on a Unix socket and answers one command per connection."""

    def __init__(self, sock: socket.socket, socket_path: Path) -> None:
        self._sock = sock
        self.socket_path = socket_path
        self._server: asyncio.AbstractServer | None = None

    @classmethod
    async def bind(cls, socket_path: Path | str) -> IpcServer:
        """Create the listening socket, replacing any stale socket file."""
        _require_unix()
        path = Path(socket_path)
        if path.exists() or path.is_symlink():
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(path))
            sock.listen()
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        log.info("IPC server listening on %s", path)
        return cls(sock, path)

    async def run(self, handler: Handler) -> None:
        """Serve clients with ``handler`` until cancelled or closed."""

        async def on_client(
            reader: asyncio.StreamReader, writer: asyncio.StreamWriter
        ) -> None:
            try:
                await _handle_client(reader, writer, handler)
            except Exception as exc:  # noqa: BLE001 - one bad client must not stop the server
                log.warning("IPC client error: %s", exc)
            finally:
                writer.close()

        self._server = await asyncio.start_unix_server(on_client, sock=self._sock)
        async with self._server:
            await self._server.serve_forever()

    def close(self) -> None:
        """Stop listening and remove the socket file."""
        if self._server is not None:
            self._server.close()
        self._sock.close()
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass

    async def __aenter__(self) -> IpcServer:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


async def _handle_client(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    handler: Handler,
) -> None:
    line = await reader.readline()
    command = IpcCommand.from_json(line.decode("utf-8"))
    log.debug("IPC command: %s", command)

    response = await handler(command)

    writer.write(response.to_json().encode("utf-8") + b"\n")
    await writer.drain()
    if writer.can_write_eof():
        writer.write_eof()


class IpcClient:
    """Sends single commands to a running daemon."""

    def __init__(self, socket_path: Path | str) -> None:
        self.socket_path = Path(socket_path)

    async def send(self, command: IpcCommand) -> IpcResponse:
        """Send ``command`` and wait for the daemon's answer."""
        _require_unix()
        try:
            reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        except OSError as exc:
            raise ConnectionError(f"Failed to connect to daemon: {exc}") from exc

        try:
            writer.write(command.to_json().encode("utf-8") + b"\n")
            await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
            line = await reader.readline()
        finally:
            writer.close()
        return IpcResponse.from_json(line.decode("utf-8"))

    async def is_running(self) -> bool:
        """Whether a daemon answers a ping on the socket."""
        try:
            response = await self.send(IpcCommand(CommandKind.PING))
        except (OSError, ValueError, RuntimeError):
            return False
        return response.kind is ResponseKind.PONG