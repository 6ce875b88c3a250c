"""Status API routes — a small read-only HTTP view of a running node.

Endpoints:
  - /health     node state and disconnect source
  - /api/peers  live peers as last published by discovery
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from udpnet.node import Node

logger = logging.getLogger(__name__)

NODE_KEY: web.AppKey[Node] = web.AppKey("udpnet_node")


def setup_status(app: web.Application, node: Node) -> None:
    """Register status routes on *app*."""
    app[NODE_KEY] = node
    app.router.add_get("/health", _api_health)
    app.router.add_get("/api/peers", _api_peers)


async def start_status_server(node: Node, host: str, port: int) -> web.AppRunner:
    """Serve the status routes for *node*; caller owns ``runner.cleanup()``."""
    app = web.Application()
    setup_status(app, node)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except OSError:
        await runner.cleanup()
        raise
    logger.info("Status server listening on %s:%d", host, port)
    return runner


async def _api_health(request: web.Request) -> web.Response:
    node = request.app[NODE_KEY]
    stats = node.get_stats()
    status = 200 if stats["state"] == "running" else 503
    return web.json_response(
        {
            "peer_id": stats["peer_id"],
            "state": stats["state"],
            "disconnected_by": stats["disconnected_by"],
        },
        status=status,
    )


async def _api_peers(request: web.Request) -> web.Response:
    node = request.app[NODE_KEY]
    peers = list(node.peers)
    return web.json_response({"count": len(peers), "peers": peers})
