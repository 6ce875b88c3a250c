"""udpnet Node — wires discovery and data broadcast into one running node.

A node runs four independent tasks:
1. Heartbeat sender (discovery transmit)
2. Heartbeat listener (discovery receive, owns the peer table)
3. Record sender (data transmit)
4. Record listener (data receive)

The tasks share nothing but queues. The first fatal transport error from any
of them fires the node's disconnect signal; during the join grace period that
means the node failed to join the network, afterwards it means the node was
disconnected. Either way the node stops rather than run half-connected.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, TypeVar

from aiohttp import web
from pydantic import BaseModel

from udpnet.codec import ModelCodec
from udpnet.network import bcast, peers
from udpnet.network.peers import PeerUpdate
from udpnet.network.transport import BROADCAST_ADDRESS, bind as bind_socket

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class NetworkJoinError(Exception):
    """The node hit a fatal transport error during the join grace period."""


class NetworkDisconnectedError(Exception):
    """The node hit a fatal transport error while running."""


class NodeState(str, Enum):
    """Lifecycle of a node."""

    STARTING = "starting"
    JOINING = "joining"
    RUNNING = "running"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


@dataclass
class NodeConfig:
    """Configuration for a udpnet node."""

    peer_id: str
    peer_port: int = 19738
    data_port: int = 19735
    broadcast_address: str = BROADCAST_ADDRESS
    heartbeat_interval: float = peers.HEARTBEAT_INTERVAL
    liveness_multiplier: float = 2.0
    join_grace_period: float = 1.0

    # Status HTTP server, disabled when status_port is None
    status_host: str = "127.0.0.1"
    status_port: int | None = None

    @property
    def liveness_window(self) -> float:
        return self.heartbeat_interval * self.liveness_multiplier

    def validate(self) -> None:
        if not self.peer_id:
            raise ValueError("peer_id must not be empty")
        if self.peer_port == self.data_port:
            raise ValueError("peer_port and data_port must differ")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.liveness_multiplier < 1:
            raise ValueError("liveness_multiplier must be at least 1")
        if self.join_grace_period < 0:
            raise ValueError("join_grace_period must not be negative")


class DisconnectSignal:
    """Single-fire notification that the node lost the network.

    Only the first ``notify()`` counts; later calls are no-ops.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.source: str | None = None
        self.error: BaseException | None = None

    def notify(self, source: str, error: BaseException) -> bool:
        """Fire the signal. Returns True if this call fired it."""
        if self._event.is_set():
            return False
        self.source = source
        self.error = error
        self._event.set()
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        if not self.is_set():
            return "DisconnectSignal(pending)"
        return f"DisconnectSignal(source={self.source!r}, error={self.error!r})"


class Node(Generic[RecordT]):
    """A discovery + broadcast node.

    Usage::

        async with Node(config, CustomData) as node:
            node.send(CustomData(message="hi", iteration=0))
            async for event in node.events():
                ...
    """

    def __init__(
        self,
        config: NodeConfig,
        record_type: type[RecordT],
        *,
        bind: peers.Binder = bind_socket,
    ) -> None:
        config.validate()
        self.config = config
        self.codec = ModelCodec(record_type)
        self.state = NodeState.STARTING
        self.disconnected = DisconnectSignal()
        self._bind = bind

        self._heartbeat_enable: asyncio.Queue[bool] = asyncio.Queue()
        self._peer_updates: asyncio.Queue[PeerUpdate] = asyncio.Queue()
        self._outbox: asyncio.Queue[RecordT] = asyncio.Queue()
        self._inbox: asyncio.Queue[RecordT] = asyncio.Queue()

        self._tasks: list[asyncio.Task[None]] = []
        self._status_runner: web.AppRunner | None = None
        self._peers: tuple[str, ...] = ()
        self._carried: deque[Any] = deque()

    @property
    def peer_id(self) -> str:
        return self.config.peer_id

    @property
    def peers(self) -> tuple[str, ...]:
        """Live peers as of the last ``PeerUpdate`` drained from ``events()``."""
        return self._peers

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start all tasks and wait out the join grace period.

        Raises:
            NetworkJoinError: if any task failed within the grace period.
        """
        cfg = self.config
        self.state = NodeState.JOINING
        self._spawn("peers.tx", functools.partial(
            peers.tx,
            cfg.peer_port, cfg.peer_id, self._heartbeat_enable,
            interval=cfg.heartbeat_interval,
            broadcast_address=cfg.broadcast_address,
            bind=self._bind,
        ))
        self._spawn("peers.rx", functools.partial(
            peers.rx,
            cfg.peer_port, self._peer_updates,
            interval=cfg.heartbeat_interval,
            timeout=cfg.liveness_window,
            bind=self._bind,
        ))
        self._spawn("bcast.tx", functools.partial(
            bcast.tx,
            cfg.data_port, self._outbox, self.codec,
            broadcast_address=cfg.broadcast_address,
            bind=self._bind,
        ))
        self._spawn("bcast.rx", functools.partial(
            bcast.rx,
            cfg.data_port, self._inbox, self.codec,
            bind=self._bind,
        ))

        # Let every task reach its first bind before judging the join
        await asyncio.sleep(0)
        try:
            await asyncio.wait_for(self.disconnected.wait(), timeout=cfg.join_grace_period)
        except asyncio.TimeoutError:
            pass
        else:
            await self._cancel_tasks()
            self.state = NodeState.DISCONNECTED
            raise NetworkJoinError(
                f"Unable to connect to network ({self.disconnected.source}: "
                f"{self.disconnected.error})"
            ) from self.disconnected.error

        self.state = NodeState.RUNNING
        logger.info(
            "Node %s running: peer_port=%d, data_port=%d, window=%.1fs",
            cfg.peer_id, cfg.peer_port, cfg.data_port, cfg.liveness_window,
        )

        if cfg.status_port is not None:
            from udpnet.dashboard.routes import start_status_server

            try:
                self._status_runner = await start_status_server(
                    self, cfg.status_host, cfg.status_port,
                )
            except OSError as e:
                logger.error(
                    "Status server on %s:%d failed, stopping node: %s",
                    cfg.status_host, cfg.status_port, e,
                )
                await self._cancel_tasks()
                self.state = NodeState.STOPPED
                raise

    async def stop(self) -> None:
        """Cancel all tasks and close the status server."""
        await self._cancel_tasks()
        if self._status_runner is not None:
            await self._status_runner.cleanup()
            self._status_runner = None
        if self.state is not NodeState.DISCONNECTED:
            self.state = NodeState.STOPPED
        logger.info("Node %s stopped", self.peer_id)

    async def __aenter__(self) -> Node[RecordT]:
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Application interface ───────────────────────────────────

    def send(self, record: RecordT) -> None:
        """Queue a record for broadcast on the data port."""
        self._outbox.put_nowait(record)

    def set_heartbeat_enabled(self, enabled: bool) -> None:
        """Pause or resume heartbeat broadcast (peers will see us leave/rejoin)."""
        self._heartbeat_enable.put_nowait(enabled)

    async def events(self) -> AsyncIterator[PeerUpdate | RecordT]:
        """Yield peer updates and received records as they arrive.

        Each stream keeps its own FIFO order; across streams, whichever is
        ready first is yielded first.

        Raises:
            NetworkDisconnectedError: once the disconnect signal fires.
        """
        while self._carried:
            event = self._carried.popleft()
            if isinstance(event, PeerUpdate):
                self._peers = event.peers
            yield event

        sources: tuple[asyncio.Queue[Any], ...] = (self._peer_updates, self._inbox)
        getters: dict[asyncio.Task[Any], asyncio.Queue[Any]] = {}
        disconnect = asyncio.ensure_future(self.disconnected.wait())
        try:
            while True:
                waiting = set(getters.values())
                for queue in sources:
                    if queue not in waiting:
                        getters[asyncio.ensure_future(queue.get())] = queue

                done, _ = await asyncio.wait(
                    [*getters, disconnect],
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for task in [t for t in getters if t in done]:
                    del getters[task]
                    event = task.result()
                    if isinstance(event, PeerUpdate):
                        self._peers = event.peers
                    yield event

                if disconnect in done:
                    await self._on_disconnect()
        finally:
            # Events already taken off a queue go to the next events() call
            for task in getters:
                if task.done() and not task.cancelled():
                    self._carried.append(task.result())
                else:
                    task.cancel()
            disconnect.cancel()

    # ── Internals ───────────────────────────────────────────────

    def _spawn(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.create_task(self._supervise(name, factory), name=f"udpnet-{name}")
        self._tasks.append(task)

    async def _supervise(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        """Run a protocol task, turning its failure into the disconnect signal.

        The first failure stops the whole node: the remaining tasks are
        cancelled here, whether or not anyone is reading ``events()``.
        """
        try:
            await factory()
        except Exception as e:
            if self.disconnected.notify(name, e):
                logger.error("%s failed, node is disconnected: %s", name, e)
                self.state = NodeState.DISCONNECTED
                current = asyncio.current_task()
                for task in self._tasks:
                    if task is not current:
                        task.cancel()
            else:
                logger.debug("%s failed after disconnect: %s", name, e)

    async def _cancel_tasks(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _on_disconnect(self) -> None:
        self.state = NodeState.DISCONNECTED
        await self._cancel_tasks()
        raise NetworkDisconnectedError(
            f"Disconnected from network ({self.disconnected.source}: "
            f"{self.disconnected.error})"
        ) from self.disconnected.error

    def get_stats(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "state": self.state.value,
            "peers": list(self._peers),
            "peer_port": self.config.peer_port,
            "data_port": self.config.data_port,
            "liveness_window": self.config.liveness_window,
            "disconnected_by": self.disconnected.source,
        }
