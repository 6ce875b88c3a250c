"""Networking layer — UDP transport, peer discovery and data broadcast."""

from udpnet.network.peers import PeerRecord, PeerTable, PeerUpdate
from udpnet.network.transport import BroadcastSocket, TransportError

__all__ = ["BroadcastSocket", "PeerRecord", "PeerTable", "PeerUpdate", "TransportError"]
