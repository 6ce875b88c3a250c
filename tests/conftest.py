"""Shared fixtures: an in-memory broadcast network standing in for UDP."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from udpnet.network.transport import TransportError


class FakeSocket:
    """Quacks like ``BroadcastSocket`` but delivers through a ``FakeNetwork``."""

    def __init__(self, net: FakeNetwork, local: tuple[str, int], target: tuple[str, int]) -> None:
        self.net = net
        self.local_address = local
        self.target = target
        self.closed = False
        self.inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def broadcast(self, data: bytes) -> None:
        if self.target[1] in self.net.fail_send:
            raise TransportError(f"send to port {self.target[1]} failed")
        self.net.deliver(self.target[1], data, self.local_address)

    async def receive(self) -> tuple[bytes, tuple[str, int]]:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True
        self.net.unregister(self)

    def __enter__(self) -> FakeSocket:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class FakeNetwork:
    """A single broadcast domain; every listener on a port sees every datagram."""

    def __init__(self, host: str = "10.0.0.1") -> None:
        self.host = host
        self.listeners: dict[int, list[FakeSocket]] = {}
        self.sent: list[tuple[int, bytes]] = []
        self.fail_bind: set[int] = set()
        self.fail_send: set[int] = set()
        self._next_port = 40000

    def bind(
        self,
        port: int,
        *,
        listen: bool = False,
        broadcast_address: str = "255.255.255.255",
        target_port: int | None = None,
    ) -> FakeSocket:
        if port in self.fail_bind:
            raise TransportError(f"cannot bind UDP port {port}: address in use")
        if listen:
            local = (self.host, port)
        else:
            self._next_port += 1
            local = (self.host, self._next_port)
        sock = FakeSocket(self, local, (broadcast_address, port if target_port is None else target_port))
        if listen:
            self.listeners.setdefault(port, []).append(sock)
        return sock

    def unregister(self, sock: FakeSocket) -> None:
        listeners = self.listeners.get(sock.local_address[1], [])
        if sock in listeners:
            listeners.remove(sock)

    def deliver(self, port: int, data: bytes, source: tuple[str, int]) -> None:
        self.sent.append((port, data))
        for sock in self.listeners.get(port, []):
            sock.inbox.put_nowait((data, source))

    def inject(self, port: int, data: bytes, source: tuple[str, int] = ("10.0.0.99", 5555)) -> None:
        """Deliver a datagram as if it came from another host."""
        self.deliver(port, data, source)

    def break_port(self, port: int) -> None:
        """Make every listener on ``port`` fail its next receive."""
        for sock in self.listeners.get(port, []):
            sock.inbox.put_nowait(TransportError(f"receive on port {port} failed"))

    def sent_on(self, port: int) -> list[bytes]:
        return [data for p, data in self.sent if p == port]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def net():
    return FakeNetwork()


@pytest.fixture
def clock():
    return FakeClock()


async def drain(queue: asyncio.Queue[Any], wait: float = 0.05) -> list[Any]:
    """Collect everything that shows up on ``queue`` within ``wait`` seconds."""
    items = []
    deadline = asyncio.get_running_loop().time() + wait
    while True:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            break
        try:
            items.append(await asyncio.wait_for(queue.get(), timeout=remaining))
        except asyncio.TimeoutError:
            break
    return items


@pytest.fixture
def drain_queue():
    return drain
