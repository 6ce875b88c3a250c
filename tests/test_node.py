"""Tests for udpnet.node — control plane wiring and disconnect handling."""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from typing import Any, Callable

import pytest
from pydantic import BaseModel

from udpnet.network.peers import PeerUpdate
from udpnet.network.transport import TransportError
from udpnet.node import (
    DisconnectSignal,
    NetworkDisconnectedError,
    NetworkJoinError,
    Node,
    NodeConfig,
    NodeState,
)

PEER_PORT = 19738
DATA_PORT = 19735


class Greeting(BaseModel):
    message: str
    iteration: int


# ── Helpers ──────────────────────────────────────────────────────

def make_config(peer_id: str = "A", **kwargs: Any) -> NodeConfig:
    defaults = dict(
        peer_port=PEER_PORT,
        data_port=DATA_PORT,
        heartbeat_interval=0.02,
        liveness_multiplier=5.0,
        join_grace_period=0.05,
    )
    defaults.update(kwargs)
    return NodeConfig(peer_id=peer_id, **defaults)


async def next_matching(
    node: Node,
    predicate: Callable[[Any], bool],
    timeout: float = 2.0,
) -> tuple[Any, list[Any]]:
    """Drain ``node.events()`` until ``predicate`` matches."""
    seen: list[Any] = []

    async def consume() -> Any:
        async with aclosing(node.events()) as events:
            async for event in events:
                seen.append(event)
                if predicate(event):
                    return event

    return await asyncio.wait_for(consume(), timeout=timeout), seen


# ── Configuration ────────────────────────────────────────────────

class TestNodeConfig:
    def test_defaults(self):
        cfg = NodeConfig(peer_id="A")
        assert cfg.peer_port == 19738
        assert cfg.data_port == 19735
        assert cfg.liveness_window == 2.0
        cfg.validate()

    def test_liveness_window_scales_with_interval(self):
        cfg = NodeConfig(peer_id="A", heartbeat_interval=0.5, liveness_multiplier=3)
        assert cfg.liveness_window == 1.5

    @pytest.mark.parametrize("kwargs, match", [
        ({"peer_id": ""}, "peer_id"),
        ({"peer_id": "A", "peer_port": 1, "data_port": 1}, "differ"),
        ({"peer_id": "A", "heartbeat_interval": 0}, "heartbeat_interval"),
        ({"peer_id": "A", "liveness_multiplier": 0.5}, "liveness_multiplier"),
        ({"peer_id": "A", "join_grace_period": -1}, "join_grace_period"),
    ])
    def test_invalid(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            NodeConfig(**kwargs).validate()

    def test_node_rejects_invalid_config(self):
        with pytest.raises(ValueError):
            Node(NodeConfig(peer_id=""), Greeting)


# ── Disconnect signal ────────────────────────────────────────────

class TestDisconnectSignal:
    @pytest.mark.asyncio
    async def test_first_notification_wins(self):
        signal = DisconnectSignal()
        first = TransportError("first")
        assert signal.notify("peers.rx", first) is True
        assert signal.notify("bcast.tx", TransportError("second")) is False
        assert signal.source == "peers.rx"
        assert signal.error is first
        await asyncio.wait_for(signal.wait(), timeout=1)

    def test_pending_repr(self):
        signal = DisconnectSignal()
        assert not signal.is_set()
        assert "pending" in repr(signal)


# ── Startup ──────────────────────────────────────────────────────

class TestStartup:
    @pytest.mark.asyncio
    async def test_start_reaches_running(self, net):
        node = Node(make_config(), Greeting, bind=net.bind)
        assert node.state is NodeState.STARTING
        await node.start()
        assert node.state is NodeState.RUNNING
        assert len(node._tasks) == 4
        await node.stop()
        assert node.state is NodeState.STOPPED
        assert node._tasks == []

    @pytest.mark.asyncio
    async def test_bind_failure_is_failed_join(self, net):
        net.fail_bind.add(DATA_PORT)
        node = Node(make_config(join_grace_period=1.0), Greeting, bind=net.bind)
        started = time.monotonic()
        with pytest.raises(NetworkJoinError, match="Unable to connect to network"):
            await node.start()
        assert time.monotonic() - started < 1.0
        assert node.state is NodeState.DISCONNECTED
        assert node.disconnected.source in {"bcast.tx", "bcast.rx"}
        assert node._tasks == []

    @pytest.mark.asyncio
    async def test_context_manager_failed_join(self, net):
        net.fail_bind.add(PEER_PORT)
        with pytest.raises(NetworkJoinError):
            async with Node(make_config(), Greeting, bind=net.bind):
                pass

    @pytest.mark.asyncio
    async def test_context_manager_stops(self, net):
        async with Node(make_config(), Greeting, bind=net.bind) as node:
            assert node.state is NodeState.RUNNING
        assert node.state is NodeState.STOPPED


# ── Event stream ─────────────────────────────────────────────────

class TestEvents:
    @pytest.mark.asyncio
    async def test_sees_itself_and_its_records(self, net):
        async with Node(make_config("X"), Greeting, bind=net.bind) as node:
            joined, _ = await next_matching(
                node, lambda e: isinstance(e, PeerUpdate) and e.new == "X",
            )
            assert node.peers == ("X",)

            record = Greeting(message="Hello from node X", iteration=5)
            node.send(record)
            received, _ = await next_matching(node, lambda e: isinstance(e, Greeting))
            assert received == record

    @pytest.mark.asyncio
    async def test_merge_keeps_per_stream_order(self):
        node = Node(make_config(), Greeting)
        for i in range(3):
            node._peer_updates.put_nowait(PeerUpdate(peers=(f"p{i}",), new=f"p{i}"))
            node._inbox.put_nowait(Greeting(message="m", iteration=i))

        events: list[Any] = []
        async with aclosing(node.events()) as stream:
            async for event in stream:
                events.append(event)
                if len(events) == 6:
                    break

        updates = [e.new for e in events if isinstance(e, PeerUpdate)]
        records = [e.iteration for e in events if isinstance(e, Greeting)]
        assert updates == ["p0", "p1", "p2"]
        assert records == [0, 1, 2]
        assert node.peers == ("p2",)

    @pytest.mark.asyncio
    async def test_other_node_churn(self, net):
        """B sees A leave while A's heartbeats are paused and rejoin after."""
        cfg_a = make_config("A", heartbeat_interval=0.05, liveness_multiplier=4)
        cfg_b = make_config("B", heartbeat_interval=0.05, liveness_multiplier=4)
        async with Node(cfg_a, Greeting, bind=net.bind) as a, \
                Node(cfg_b, Greeting, bind=net.bind) as b:
            await next_matching(b, lambda e: isinstance(e, PeerUpdate) and e.new == "A")

            a.set_heartbeat_enabled(False)
            gone, _ = await next_matching(
                b, lambda e: isinstance(e, PeerUpdate) and "A" in e.lost,
            )
            assert gone.new is None
            assert "A" not in gone.peers

            a.set_heartbeat_enabled(True)
            back, _ = await next_matching(
                b, lambda e: isinstance(e, PeerUpdate) and e.new == "A",
            )
            assert "A" not in back.lost
            assert set(back.peers) == {"A", "B"}


# ── Disconnect while running ─────────────────────────────────────

class TestDisconnect:
    @pytest.mark.asyncio
    async def test_receive_failure_escalates(self, net):
        node = Node(make_config(), Greeting, bind=net.bind)
        await node.start()
        net.break_port(PEER_PORT)
        with pytest.raises(NetworkDisconnectedError):
            await next_matching(node, lambda e: False)
        assert node.state is NodeState.DISCONNECTED
        assert node.disconnected.source == "peers.rx"
        assert node._tasks == []
        await node.stop()
        assert node.state is NodeState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_only_first_failure_counts(self, net):
        node = Node(make_config(), Greeting, bind=net.bind)
        await node.start()
        net.break_port(DATA_PORT)
        await asyncio.wait_for(node.disconnected.wait(), timeout=1)
        net.break_port(PEER_PORT)
        await asyncio.sleep(0.05)
        assert node.disconnected.source == "bcast.rx"
        await node.stop()

    @pytest.mark.asyncio
    async def test_send_failure_escalates(self, net):
        node = Node(make_config(), Greeting, bind=net.bind)
        await node.start()
        net.fail_send.add(DATA_PORT)
        node.send(Greeting(message="doomed", iteration=0))
        with pytest.raises(NetworkDisconnectedError):
            await next_matching(node, lambda e: False)
        assert node.disconnected.source == "bcast.tx"
        await node.stop()

    @pytest.mark.asyncio
    async def test_failure_stops_node_without_consumer(self, net):
        node = Node(make_config(), Greeting, bind=net.bind)
        await node.start()
        net.break_port(PEER_PORT)
        await asyncio.wait_for(node.disconnected.wait(), timeout=1)
        await asyncio.sleep(0.05)

        assert node.state is NodeState.DISCONNECTED
        assert all(task.done() for task in node._tasks)
        assert node.get_stats()["state"] == "disconnected"

        with pytest.raises(NetworkDisconnectedError):
            await next_matching(node, lambda e: False)
        assert node._tasks == []
        await node.stop()
