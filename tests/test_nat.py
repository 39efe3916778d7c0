import asyncio
import time

import pytest

from riftnode.nat import PUNCH_PACKET, HolePuncher, coordinated_punch


class _Peer(asyncio.DatagramProtocol):
    def __init__(self, reply: bool):
        self.reply = reply
        self.packets = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.packets.append(data)
        if self.reply:
            self.transport.sendto(b"pong", addr)


async def _start_peer(reply: bool):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: _Peer(reply), local_addr=("127.0.0.1", 0)
    )
    return transport, protocol, transport.get_extra_info("sockname")


def test_hole_puncher_creation():
    puncher = HolePuncher(51820)
    assert puncher.local_port == 51820
    assert puncher.response_timeout == 5.0


@pytest.mark.asyncio
async def test_punch_succeeds_when_peer_replies():
    transport, _, addr = await _start_peer(reply=True)
    try:
        result = await HolePuncher(0, response_timeout=2.0).punch(addr, 3, 0.01)
    finally:
        transport.close()
    assert result is True


@pytest.mark.asyncio
async def test_punch_sends_requested_packets():
    transport, peer, addr = await _start_peer(reply=False)
    try:
        result = await HolePuncher(0, response_timeout=0.3).punch(addr, 4, 0.01)
    finally:
        transport.close()
    assert result is False
    assert peer.packets == [PUNCH_PACKET] * 4


@pytest.mark.asyncio
async def test_punch_times_out_without_reply():
    transport, _, addr = await _start_peer(reply=False)
    try:
        start = time.monotonic()
        result = await HolePuncher(0, response_timeout=0.2).punch(addr, 1, 0.0)
        elapsed = time.monotonic() - start
    finally:
        transport.close()
    assert result is False
    assert elapsed >= 0.15


@pytest.mark.asyncio
async def test_coordinated_punch_in_past_runs_immediately():
    transport, _, addr = await _start_peer(reply=True)
    try:
        result = await coordinated_punch(0, addr, 0, 2, 10)
    finally:
        transport.close()
    assert result is True


@pytest.mark.asyncio
async def test_coordinated_punch_waits_for_scheduled_time():
    transport, _, addr = await _start_peer(reply=True)
    target = int(time.time() * 1000) + 200
    try:
        result = await coordinated_punch(0, addr, target, 1, 10)
        finished = time.time() * 1000
    finally:
        transport.close()
    assert result is True
    assert finished >= target - 20