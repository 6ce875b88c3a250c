"""Broadcast data channel — fire-and-forget application records.

One record per datagram, encoded with a ``ModelCodec``. Senders keep FIFO
order relative to their outbox; receivers accept whatever arrives, in
whatever order, and drop anything that does not decode.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from udpnet.codec import CodecError, ModelCodec
from udpnet.network.transport import BROADCAST_ADDRESS, BroadcastSocket, bind as bind_socket

logger = logging.getLogger(__name__)


async def tx(
    port: int,
    outbox: asyncio.Queue[Any],
    codec: ModelCodec[Any],
    *,
    broadcast_address: str = BROADCAST_ADDRESS,
    bind: Callable[..., BroadcastSocket] = bind_socket,
) -> None:
    """Broadcast every record taken from ``outbox`` until cancelled.

    Records that fail to encode are logged and skipped.

    Raises:
        TransportError: on bind or send failure.
    """
    with bind(port, broadcast_address=broadcast_address) as sock:
        logger.info("Broadcasting %s records on port %d", codec.model.__name__, port)
        while True:
            record = await outbox.get()
            try:
                data = codec.encode(record)
            except CodecError as e:
                logger.warning("Skipping record: %s", e)
                continue
            await sock.broadcast(data)


async def rx(
    port: int,
    inbox: asyncio.Queue[Any],
    codec: ModelCodec[Any],
    *,
    bind: Callable[..., BroadcastSocket] = bind_socket,
) -> None:
    """Decode datagrams from ``port`` onto ``inbox`` until cancelled.

    Raises:
        TransportError: on bind or receive failure.
    """
    with bind(port, listen=True) as sock:
        logger.info("Receiving %s records on port %d", codec.model.__name__, port)
        while True:
            data, addr = await sock.receive()
            try:
                record = codec.decode(data)
            except CodecError as e:
                logger.debug("Dropping datagram from %s:%d: %s", *addr, e)
                continue
            await inbox.put(record)
