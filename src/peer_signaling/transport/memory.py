"""In-process signaling transport.

Two linked channels that hand messages to each other through asyncio queues.
Used for loopback sessions inside one process and throughout the tests.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from peer_signaling.errors import ProtocolViolation
from peer_signaling.protocol import parse_message
from peer_signaling.transport.base import Message, SignalingChannel

logger = logging.getLogger(__name__)

# Marks the end of the stream for the receiving side
_CLOSED = object()


class MemorySignalingChannel(SignalingChannel):
    """One side of an in-memory channel pair."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._inbox: asyncio.Queue[object] = asyncio.Queue()
        self._peer: MemorySignalingChannel | None = None
        self._connected = True
        self.sent: list[Message] = []

    def _link(self, peer: "MemorySignalingChannel") -> None:
        self._peer = peer

    @property
    def session_id(self) -> str:
        """Get session identifier."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Check if the channel is still open."""
        return self._connected

    async def send(self, message: Message) -> None:
        """Deliver a message to the peer's inbox.

        Raises:
            ConnectionError: If either side has closed
        """
        if not self._connected or self._peer is None or not self._peer.is_connected:
            raise ConnectionError("Memory channel is closed")

        self.sent.append(message)
        self._peer._inbox.put_nowait(message)

        logger.debug(
            "Signaling message sent",
            extra={"session_id": self._session_id, "type": message.type},
        )

    def inject(self, raw: object) -> None:
        """Queue a raw inbound frame as if the peer had sent it."""
        self._inbox.put_nowait(raw)

    async def messages(self) -> AsyncIterator[Message]:
        """Yield inbound messages until either side closes."""
        while True:
            raw = await self._inbox.get()
            if raw is _CLOSED:
                return

            try:
                message = parse_message(raw)
            except ProtocolViolation as e:
                logger.warning(
                    "Dropping malformed signaling frame",
                    extra={"session_id": self._session_id, "error": str(e)},
                )
                continue

            yield message

    async def close(self) -> None:
        """Close both directions of the pair."""
        if not self._connected:
            return

        self._connected = False
        self._inbox.put_nowait(_CLOSED)
        if self._peer is not None and self._peer.is_connected:
            self._peer._connected = False
            self._peer._inbox.put_nowait(_CLOSED)

        logger.info("Memory channel closed", extra={"session_id": self._session_id})


def create_channel_pair(session_id: str) -> tuple[MemorySignalingChannel, MemorySignalingChannel]:
    """Create two linked channels for the initiator and the responder."""
    initiator_side = MemorySignalingChannel(session_id)
    responder_side = MemorySignalingChannel(session_id)
    initiator_side._link(responder_side)
    responder_side._link(initiator_side)
    return initiator_side, responder_side
