"""udpnet — peer discovery and best-effort broadcast over local UDP."""

from udpnet.codec import CodecError, ModelCodec
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

__all__ = [
    "CodecError",
    "DisconnectSignal",
    "ModelCodec",
    "NetworkDisconnectedError",
    "NetworkJoinError",
    "Node",
    "NodeConfig",
    "NodeState",
    "PeerUpdate",
    "TransportError",
]
