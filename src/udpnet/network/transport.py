"""Transport layer — UDP broadcast sockets for discovery and data channels.

Each protocol task owns exactly one socket. Listening sockets share their
port with other nodes on the same host (SO_REUSEADDR / SO_REUSEPORT), while
sending sockets bind an ephemeral port and broadcast to the channel port.
All socket I/O goes through the running event loop, so a task blocked on
``receive()`` never blocks the others.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from typing import Any

logger = logging.getLogger(__name__)

BROADCAST_ADDRESS = "255.255.255.255"
RECV_BUFFER_SIZE = 65535

# Send errors that only mean "this datagram was dropped locally"
TRANSIENT_ERRNOS = frozenset({errno.ENOBUFS, errno.EAGAIN, errno.EWOULDBLOCK})

Address = tuple[str, int]


class TransportError(Exception):
    """Unrecoverable socket failure (bind, send or receive)."""


class BroadcastSocket:
    """A non-blocking UDP socket that broadcasts to one channel port."""

    def __init__(
        self,
        sock: socket.socket,
        target: Address,
    ) -> None:
        self._sock = sock
        self.target = target
        self.local_address: Address = sock.getsockname()[:2]
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def broadcast(self, data: bytes) -> None:
        """Send one datagram to the channel's broadcast address.

        Raises:
            TransportError: if the socket can no longer send.
        """
        loop = asyncio.get_running_loop()
        try:
            await loop.sock_sendto(self._sock, data, self.target)
        except OSError as e:
            if e.errno in TRANSIENT_ERRNOS:
                logger.debug("Dropped datagram to %s:%d: %s", *self.target, e)
                return
            raise TransportError(
                f"broadcast to {self.target[0]}:{self.target[1]} failed: {e}"
            ) from e

    async def receive(self) -> tuple[bytes, Address]:
        """Wait for the next datagram.

        Returns:
            ``(payload, source_address)``.

        Raises:
            TransportError: if the socket fails.
        """
        loop = asyncio.get_running_loop()
        try:
            data, addr = await loop.sock_recvfrom(self._sock, RECV_BUFFER_SIZE)
        except OSError as e:
            raise TransportError(f"receive on {self.local_address} failed: {e}") from e
        return data, (addr[0], addr[1])

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._sock.close()

    def __enter__(self) -> BroadcastSocket:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def bind(
    port: int,
    *,
    listen: bool = False,
    broadcast_address: str = BROADCAST_ADDRESS,
    target_port: int | None = None,
) -> BroadcastSocket:
    """Open a broadcast-capable UDP socket for a channel.

    Args:
        port: The channel port.
        listen: Bind ``port`` itself (receive side). Sending sockets bind an
            ephemeral port instead.
        broadcast_address: Destination address for ``broadcast()``.
        target_port: Destination port, defaults to ``port``.

    Raises:
        TransportError: if the socket cannot be created or bound.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as e:
        raise TransportError(f"cannot open UDP socket: {e}") from e
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        if listen:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", port))
        else:
            sock.bind(("", 0))
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        raise TransportError(f"cannot bind UDP port {port}: {e}") from e

    target = (broadcast_address, port if target_port is None else target_port)
    logger.debug(
        "Bound UDP socket on %s (listen=%s, target=%s:%d)",
        sock.getsockname()[:2], listen, *target,
    )
    return BroadcastSocket(sock, target)
