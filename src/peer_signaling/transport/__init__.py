"""Signaling transports.

Provides abstraction over the channels that carry signaling messages between
the two roles of a session (in-memory, WebSocket, Redis pub/sub).
"""

from peer_signaling.transport.base import SignalingChannel, SignalingTransport
from peer_signaling.transport.memory import MemorySignalingChannel, create_channel_pair
from peer_signaling.transport.redis_transport import RedisSignalingChannel
from peer_signaling.transport.websocket_transport import (
    WebSocketSignalingChannel,
    WebSocketSignalingTransport,
    connect_websocket_channel,
)

__all__ = [
    "SignalingChannel",
    "SignalingTransport",
    "MemorySignalingChannel",
    "create_channel_pair",
    "RedisSignalingChannel",
    "WebSocketSignalingChannel",
    "WebSocketSignalingTransport",
    "connect_websocket_channel",
]
