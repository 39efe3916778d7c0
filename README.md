# riftnode

Building blocks for a node of a mesh VPN. Nodes find each other through a
beacon, punch holes through NAT, fall back to relaying through the beacon
when a direct path fails, and are controlled over a local Unix socket.
No third-party libraries are needed.

## What is inside

- `riftnode.tun_device`: virtual interface settings (`TunConfig`, with
  `network()` and `netmask_addr()`), IPv4 header helpers
  (`parse_ipv4_dst`, `parse_ipv4_src`), subnet checks (`is_in_network`),
  CIDR prefix parsing (`parse_netmask`), and route setup for the mesh
  subnet. `route_command` builds the `ip route add` command on Linux or
  the `route -n add` command on macOS. `configure_routes` runs that
  command and treats "File exists" as success.
- `riftnode.nat`: UDP hole punching from the local tunnel port
  (`HolePuncher.punch`), and `coordinated_punch`, which waits until an
  agreed Unix time in milliseconds and then punches.
- `riftnode.relay_client`: the relay packet format (`encode_relay_packet`,
  `decode_relay_packet`, raising `RelayPacketError`) and `RelayClient`,
  which keeps relay sessions per peer virtual IP, sends traffic to the
  beacon's relay address and queues received payloads as
  `(payload, peer_ip)` pairs.
- `riftnode.connection`: the connection states (`StateKind`,
  `ConnectionState` with `is_connected`, `is_direct` and `state_name`)
  and their timing settings (`ConnectionConfig`), including exponential
  reconnect backoff (`reconnect_delay`).
- `riftnode.peers`: `PeerConnection` (byte counters and last activity)
  and `PeerTable`, which finds peers by virtual IP, endpoint or public
  key, marks silent peers disconnected (`mark_dead_peers`), picks peers
  due for a reconnection attempt (`due_reconnections`) and lists sessions
  older than the rekey interval (`needs_rekey`).
- `riftnode.ipc`: the JSON line protocol (`IpcCommand`, `CommandKind`,
  `IpcResponse`, `ResponseKind`, `DaemonStatus`, `PeerStatus`), with
  `IpcServer` and `IpcClient` over a Unix socket and
  `default_socket_path()`.
- `riftnode.cli`: the `rift-node` command.

## Installing

```
pip install .
```

## Command line

The `rift-node` command talks to a running daemon through its control
socket (by default `/var/run/rift/rift-node.sock`):

```
rift-node ctl status
rift-node ctl peers
rift-node ctl ping
rift-node ctl reconnect
rift-node peers --socket /tmp/rift-node.sock
```

If the daemon cannot be reached, the command prints an error and exits
with status 1.

To stop a daemon that wrote a PID file (sends SIGTERM):

```
rift-node stop --pid-file /var/run/rift/rift-node.pid
```

Run `rift-node --help` to see every option.

## Using the library

```python
from riftnode.tun_device import TunConfig, is_in_network, parse_netmask

config = TunConfig("rift0", "10.99.5.23", parse_netmask("10.99.0.0/16"))
print(config.network())       # 10.99.0.0
print(config.netmask_addr())  # 255.255.0.0
print(is_in_network("10.99.255.255", "10.99.0.0", 16))  # True
```

```python
from riftnode.relay_client import encode_relay_packet, decode_relay_packet

packet = encode_relay_packet("session-1", b"payload")
session_id, payload = decode_relay_packet(packet)
```

```python
from riftnode.connection import ConnectionConfig

config = ConnectionConfig()
print(config.reconnect_delay(3))   # 8.0
print(config.reconnect_delay(10))  # 60.0, the maximum delay
```

## What this package does not do

- It does not run the node daemon itself: there is no command to create
  a configuration file, start the daemon, register with a beacon or
  show a public key. `rift-node` only controls a daemon that is already
  running.
- It has no beacon client; the beacon's address and relay sessions must
  be supplied by the caller.
- It does not create or read from a TUN device. `TunConfig` describes
  one and `configure_routes` adds its route, nothing more.
- It has no key handling, handshake or packet encryption. Public keys are
  carried as plain strings.

## Running the tests

```
pip install ".[test]"
pytest
```