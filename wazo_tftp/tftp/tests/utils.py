# Copyright 2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Fake transports and reactors to drive the TFTP protocols in tests."""
from __future__ import annotations

from collections import deque
from collections.abc import Callable
from typing import Any

from twisted.internet import defer, task
from twisted.internet.defer import Deferred

from wazo_tftp.tftp.packet import Packet, parse_dgram

Address = tuple[str, int]


class FakeTransport:
    """Record the datagrams written by a protocol."""

    def __init__(self) -> None:
        self.written: list[tuple[bytes, Address]] = []
        self.listening = True
        self.max_packet_size = 8192

    def write(self, dgram: bytes, addr: Address) -> None:
        self.written.append((dgram, addr))

    def stopListening(self) -> None:
        self.listening = False

    def packets(self) -> list[Packet]:
        return [parse_dgram(dgram) for dgram, _ in self.written]

    def pop_packets(self) -> list[Packet]:
        packets = self.packets()
        del self.written[:]
        return packets


class FakeReactor(task.Clock):
    """A clock where every listenUDP call gets a FakeTransport."""

    def __init__(self) -> None:
        super().__init__()
        self.listened: list[tuple[Any, FakeTransport]] = []

    def listenUDP(
        self, port: int, protocol, interface: str = '', maxPacketSize: int = 8192
    ) -> FakeTransport:
        transport = FakeTransport()
        transport.max_packet_size = maxPacketSize
        protocol.makeConnection(transport)
        self.listened.append((protocol, transport))
        return transport

    def resolve(self, name: str) -> Deferred[str]:
        return defer.succeed(name)


class _NetworkPort:
    def __init__(self, network: Network, addr: Address) -> None:
        self._network = network
        self.addr = addr

    def write(self, dgram: bytes, addr: Address) -> None:
        self._network.send(self.addr, addr, dgram)

    def stopListening(self) -> None:
        self._network.unbind(self.addr)


class NetworkReactor:
    """The reactor of one host of a Network."""

    def __init__(self, network: Network, host: str) -> None:
        self._network = network
        self._host = host

    def listenUDP(
        self, port: int, protocol, interface: str = '', maxPacketSize: int = 8192
    ) -> _NetworkPort:
        return self._network.bind(self._host, port, protocol, maxPacketSize)

    def callLater(self, delay: float, f: Callable, *args: Any, **kwargs: Any):
        return self._network.clock.callLater(delay, f, *args, **kwargs)

    def seconds(self) -> float:
        return self._network.clock.seconds()

    def resolve(self, name: str) -> Deferred[str]:
        return defer.succeed(name)


class Network:
    """Deliver datagrams between hosts, in order, losing those dropped.

    drop -- if set, called with (dgram, src, dst) for every datagram sent,
            the datagram being lost when it returns True
    """

    def __init__(self) -> None:
        self.clock = task.Clock()
        self.drop: Callable[[bytes, Address, Address], bool] | None = None
        self.sent: list[tuple[Address, Address, bytes]] = []
        self._protocols: dict[Address, tuple[Any, int]] = {}
        self._queue: deque[tuple[Address, Address, bytes]] = deque()
        self._next_port = 50000

    def reactor(self, host: str) -> NetworkReactor:
        return NetworkReactor(self, host)

    def bind(
        self, host: str, port: int, protocol, max_packet_size: int = 8192
    ) -> _NetworkPort:
        if port == 0:
            port = self._next_port
            self._next_port += 1
        port_obj = _NetworkPort(self, (host, port))
        self._protocols[(host, port)] = (protocol, max_packet_size)
        protocol.makeConnection(port_obj)
        return port_obj

    def unbind(self, addr: Address) -> None:
        self._protocols.pop(addr, None)

    def unbind_host(self, host: str) -> None:
        for addr in [addr for addr in self._protocols if addr[0] == host]:
            del self._protocols[addr]

    def send(self, src: Address, dst: Address, dgram: bytes) -> None:
        self.sent.append((src, dst, dgram))
        if self.drop is not None and self.drop(dgram, src, dst):
            return
        self._queue.append((src, dst, dgram))

    def pump(self) -> None:
        while self._queue:
            src, dst, dgram = self._queue.popleft()
            try:
                protocol, max_packet_size = self._protocols[dst]
            except KeyError:
                continue
            # the receiving socket truncates larger datagrams
            protocol.datagramReceived(dgram[:max_packet_size], src)

    def run(self, max_steps: int = 10000) -> None:
        """Deliver datagrams and fire timers until nothing is left to do."""
        for _ in range(max_steps):
            self.pump()
            calls = self.clock.getDelayedCalls()
            if not calls:
                return
            next_time = min(call.getTime() for call in calls)
            self.clock.advance(max(0, next_time - self.clock.seconds()))
        raise AssertionError('network still active after max steps')
