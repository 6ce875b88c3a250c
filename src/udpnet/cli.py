"""CLI entry point for the udpnet demo node.

Usage:
    udpnet-demo
    udpnet-demo --id alice
    udpnet-demo --config node_config.json --peer-port 20000 --data-port 20001

The node announces itself on the discovery port, prints every peer update and
every record it receives, broadcasts a greeting once per second, and
periodically pauses its heartbeats to provoke peer loss / new peer updates on
the other nodes.

Environment variables:
    UDPNET_ID:         Override node id
    UDPNET_PEER_PORT:  Override discovery port
    UDPNET_DATA_PORT:  Override data port
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from udpnet.network.peers import PeerUpdate
from udpnet.node import NetworkDisconnectedError, NetworkJoinError, Node, NodeConfig

logger = logging.getLogger(__name__)

CHURN_ON_SECONDS = 6.0
CHURN_OFF_SECONDS = 3.0
SEND_INTERVAL = 1.0


class CustomData(BaseModel):
    """Demo payload broadcast on the data port."""

    message: str
    iteration: int = Field(default=0, ge=0)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a udpnet demo node (peer discovery + broadcast data)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "id",
        nargs="?",
        help="Node id (default: py@<local-ip>#<pid>)",
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to JSON config file",
    )
    parser.add_argument(
        "--peer-port",
        type=int,
        help="Override discovery port",
    )
    parser.add_argument(
        "--data-port",
        type=int,
        help="Override data port",
    )
    parser.add_argument(
        "--status-port",
        type=int,
        help="Serve /health and /api/peers on this port",
    )
    parser.add_argument(
        "--no-churn",
        action="store_true",
        help="Keep heartbeats on instead of toggling them",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


def default_peer_id() -> str:
    """Derive an id from the local address and process id."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 53))
            local_ip = s.getsockname()[0]
    except OSError:
        local_ip = "127.0.0.1"
    return f"py@{local_ip}#{os.getpid()}"


def load_config(config_path: str | None, overrides: dict[str, Any]) -> NodeConfig:
    """Build a node config from an optional JSON file plus overrides."""
    raw: dict[str, Any] = {}
    if config_path:
        path = Path(config_path).resolve()
        if not path.exists():
            print(f"Error: config file not found: {path}", file=sys.stderr)
            sys.exit(1)
        with open(path) as f:
            raw = json.load(f)

    raw.update({k: v for k, v in overrides.items() if v is not None})
    if not raw.get("peer_id"):
        raw["peer_id"] = default_peer_id()

    defaults = NodeConfig(peer_id=raw["peer_id"])
    config = NodeConfig(
        peer_id=raw["peer_id"],
        peer_port=int(raw.get("peer_port", defaults.peer_port)),
        data_port=int(raw.get("data_port", defaults.data_port)),
        broadcast_address=raw.get("broadcast_address", defaults.broadcast_address),
        heartbeat_interval=float(raw.get("heartbeat_interval", defaults.heartbeat_interval)),
        liveness_multiplier=float(raw.get("liveness_multiplier", defaults.liveness_multiplier)),
        join_grace_period=float(raw.get("join_grace_period", defaults.join_grace_period)),
        status_host=raw.get("status_host", defaults.status_host),
        status_port=raw.get("status_port", defaults.status_port),
    )
    config.validate()
    return config


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    if env.get("UDPNET_ID"):
        overrides["peer_id"] = env["UDPNET_ID"]
    if env.get("UDPNET_PEER_PORT"):
        overrides["peer_port"] = int(env["UDPNET_PEER_PORT"])
    if env.get("UDPNET_DATA_PORT"):
        overrides["data_port"] = int(env["UDPNET_DATA_PORT"])
    return overrides


def arg_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Config values given on the command line; an explicit 0 still counts."""
    overrides: dict[str, Any] = {}
    if args.id:
        overrides["peer_id"] = args.id
    for key in ("peer_port", "data_port", "status_port"):
        value = getattr(args, key)
        if value is not None:
            overrides[key] = value
    return overrides


async def toggle_heartbeats(
    node: Node[Any],
    on_seconds: float = CHURN_ON_SECONDS,
    off_seconds: float = CHURN_OFF_SECONDS,
) -> None:
    """Periodically pause heartbeats so other nodes see us leave and rejoin."""
    while True:
        await asyncio.sleep(on_seconds)
        node.set_heartbeat_enabled(False)
        await asyncio.sleep(off_seconds)
        node.set_heartbeat_enabled(True)


async def produce_greetings(node: Node[CustomData], interval: float = SEND_INTERVAL) -> None:
    record = CustomData(message=f"Hello from node {node.peer_id}", iteration=0)
    while True:
        node.send(record)
        record = record.model_copy(update={"iteration": record.iteration + 1})
        await asyncio.sleep(interval)


def describe(event: PeerUpdate | CustomData) -> str:
    if isinstance(event, PeerUpdate):
        lines = ["Peer update:", f"  Peers:    {list(event.peers)}"]
        lines.append(f"  New peer: {event.new if event.new is not None else '-'}")
        lines.append(f"  Lost:     {list(event.lost)}")
        return "\n".join(lines)
    return f"{event!r}"


async def run_node(config: NodeConfig, churn: bool = True) -> int:
    """Run the demo node until interrupted or disconnected."""
    node: Node[CustomData] = Node(config, CustomData)
    helpers: list[asyncio.Task[None]] = []
    try:
        await node.start()
    except NetworkJoinError as e:
        logger.error("%s", e)
        print("Unable to connect to network", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Unable to start status server: {e}", file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    consumer = asyncio.current_task()

    def handle_signal() -> None:
        print("\nShutting down...")
        if consumer is not None:
            consumer.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    helpers.append(asyncio.create_task(produce_greetings(node)))
    if churn:
        helpers.append(asyncio.create_task(toggle_heartbeats(node)))

    try:
        async for event in node.events():
            print(describe(event), flush=True)
    except NetworkDisconnectedError as e:
        logger.error("%s", e)
        return 2
    except asyncio.CancelledError:
        return 0
    finally:
        for task in helpers:
            task.cancel()
        await asyncio.gather(*helpers, return_exceptions=True)
        await node.stop()
    return 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    overrides = env_overrides()
    overrides.update(arg_overrides(args))

    try:
        config = load_config(args.config, overrides)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"  Node id:   {config.peer_id}")
    print(f"  Discovery: udp/{config.peer_port}")
    print(f"  Data:      udp/{config.data_port}")

    sys.exit(asyncio.run(run_node(config, churn=not args.no_churn)))


if __name__ == "__main__":
    main()
