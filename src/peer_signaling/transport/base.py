"""Base transport abstraction for signaling channels.

Defines the interface that all signaling transports (in-memory, WebSocket,
Redis pub/sub) must implement. A channel carries the signaling messages of a
single session between the two roles, in order.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from peer_signaling.protocol import IceCandidateMessage, SdpAnswerMessage, SdpOfferMessage

Message = SdpOfferMessage | SdpAnswerMessage | IceCandidateMessage


class SignalingChannel(ABC):
    """Base class for per-session signaling channels.

    Each transport implementation provides a concrete channel type that
    handles framing and delivery while conforming to this interface.
    """

    @abstractmethod
    async def send(self, message: Message) -> None:
        """Send a signaling message to the remote role.

        Args:
            message: Validated signaling message

        Raises:
            ConnectionError: If the channel is closed or delivery failed
        """
        pass

    @abstractmethod
    async def messages(self) -> AsyncIterator[Message]:
        """Receive signaling messages from the remote role.

        Yields validated messages in delivery order. Malformed frames are
        logged and skipped. Iteration ends when the channel closes.

        Yields:
            Message: Inbound signaling message

        Raises:
            ConnectionError: If the channel breaks unexpectedly
        """
        # Using yield to make this an async generator
        if False:
            yield

    @abstractmethod
    async def close(self) -> None:
        """Close the channel.

        Ends iteration of ``messages()`` for both sides where the transport
        allows signaling closure to the peer.
        """
        pass

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Session identifier this channel belongs to."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the channel is still open."""
        pass


class SignalingTransport(ABC):
    """Base signaling server.

    Manages the lifecycle of a listening transport and produces a channel
    for every session a remote peer opens.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start accepting remote peers.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport and close all open channels."""
        pass

    @abstractmethod
    async def accept_channel(self) -> SignalingChannel:
        """Wait for the next session opened by a remote peer.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket', 'redis')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport is currently running."""
        pass
