"""Peer discovery — heartbeat broadcast and liveness tracking.

Every node broadcasts its peer id on the discovery port at a fixed interval.
Every node also listens on that port and keeps a peer table mapping peer id
to the address and local time it was last heard from. Peers silent for longer
than the liveness window are dropped.

The table is owned by the receiving coroutine alone. The rest of the node
only ever sees ``PeerUpdate`` snapshots published on a queue, so no locking
is needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from udpnet.codec import CodecError, decode_peer_id, encode_peer_id
from udpnet.network.transport import (
    BROADCAST_ADDRESS,
    Address,
    BroadcastSocket,
    bind as bind_socket,
)

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 1.0   # Seconds between heartbeats
PEER_TIMEOUT = 2.0         # Liveness window in seconds

Binder = Callable[..., BroadcastSocket]


@dataclass
class PeerRecord:
    """A live peer as seen by the local node."""

    peer_id: str
    address: Address
    last_seen: float


@dataclass(frozen=True)
class PeerUpdate:
    """A change in peer membership.

    ``peers`` is the full set of live peers after the change, ``new`` the peer
    that just joined (if any) and ``lost`` the peers that just expired.
    """

    peers: tuple[str, ...]
    new: str | None = None
    lost: tuple[str, ...] = ()


class PeerTable:
    """Peer id → ``PeerRecord``, with liveness expiry."""

    def __init__(self, timeout: float = PEER_TIMEOUT) -> None:
        self.timeout = timeout
        self._peers: dict[str, PeerRecord] = {}

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers

    def get(self, peer_id: str) -> PeerRecord | None:
        return self._peers.get(peer_id)

    def ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._peers))

    def observe(self, peer_id: str, address: Address, seen_at: float) -> bool:
        """Record a heartbeat.

        Returns:
            True if the peer was not in the table (first sighting, or seen
            again after expiring).
        """
        record = self._peers.get(peer_id)
        if record is None:
            self._peers[peer_id] = PeerRecord(peer_id, address, seen_at)
            return True
        # Reordered heartbeats never move last_seen backwards
        if seen_at >= record.last_seen:
            record.last_seen = seen_at
            record.address = address
        return False

    def expire(self, now: float) -> list[str]:
        """Remove and return peers silent for longer than the timeout."""
        lost = sorted(
            pid for pid, record in self._peers.items()
            if now - record.last_seen > self.timeout
        )
        for pid in lost:
            del self._peers[pid]
        return lost


async def tx(
    port: int,
    peer_id: str,
    enable: asyncio.Queue[bool],
    *,
    interval: float = HEARTBEAT_INTERVAL,
    broadcast_address: str = BROADCAST_ADDRESS,
    bind: Binder = bind_socket,
) -> None:
    """Broadcast heartbeats for ``peer_id`` until cancelled.

    The most recent value put on ``enable`` decides whether heartbeats are
    sent. While disabled the task waits on the queue instead of the timer.

    Raises:
        TransportError: on bind or send failure.
        CodecError: if ``peer_id`` cannot be put on the wire.
    """
    payload = encode_peer_id(peer_id)
    enabled = True
    with bind(port, broadcast_address=broadcast_address) as sock:
        logger.info("Heartbeat sender for %s on port %d", peer_id, port)
        while True:
            while not enable.empty():
                enabled = enable.get_nowait()
            if not enabled:
                logger.debug("Heartbeats paused")
                enabled = await enable.get()
                if enabled:
                    logger.debug("Heartbeats resumed")
                continue
            await sock.broadcast(payload)
            await asyncio.sleep(interval)


async def rx(
    port: int,
    updates: asyncio.Queue[PeerUpdate],
    *,
    interval: float = HEARTBEAT_INTERVAL,
    timeout: float = PEER_TIMEOUT,
    bind: Binder = bind_socket,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Listen for heartbeats and publish membership changes until cancelled.

    The peer table is swept after every datagram and after every receive
    timeout, so expiry is detected at least once per ``interval``.

    Raises:
        TransportError: on bind or receive failure.
    """
    table = PeerTable(timeout)
    with bind(port, listen=True) as sock:
        logger.info("Listening for heartbeats on port %d", port)
        while True:
            try:
                data, addr = await asyncio.wait_for(sock.receive(), timeout=interval)
            except asyncio.TimeoutError:
                data = None

            now = clock()
            new: str | None = None
            if data is not None:
                try:
                    peer_id = decode_peer_id(data)
                except CodecError as e:
                    logger.debug("Dropping heartbeat from %s:%d: %s", *addr, e)
                else:
                    if table.observe(peer_id, addr, now):
                        new = peer_id
                        logger.info("New peer %s at %s:%d", peer_id, *addr)

            lost = table.expire(now)
            for pid in lost:
                logger.info("Lost peer %s", pid)

            if new is not None or lost:
                await updates.put(PeerUpdate(table.ids(), new, tuple(lost)))
