"""Redis pub/sub signaling transport.

Each session uses two topics, one per role:

    <prefix><session_id>:initiator
    <prefix><session_id>:responder

A channel subscribes to its own role's topic and publishes to the peer's.
Closing a channel publishes a sentinel that ends iteration on both sides.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from peer_signaling.errors import ProtocolViolation
from peer_signaling.protocol import Role, encode_message, parse_message
from peer_signaling.transport.base import Message, SignalingChannel

logger = logging.getLogger(__name__)

_CLOSED_SENTINEL = b"<signaling-channel-closed>"


def topic_for(channel_prefix: str, session_id: str, role: Role) -> str:
    """Pub/sub topic a role listens on."""
    return f"{channel_prefix}{session_id}:{role.value}"


class RedisSignalingChannel(SignalingChannel):
    """Signaling channel over Redis pub/sub.

    Call ``open()`` (or use ``connect()``) before sending so that no message
    published by the peer is missed.
    """

    def __init__(
        self,
        client: Any,
        session_id: str,
        role: Role,
        channel_prefix: str = "signaling:",
        owns_client: bool = False,
    ) -> None:
        """Initialize Redis channel.

        Args:
            client: redis.asyncio client
            session_id: Session identifier
            role: Local role; messages are published to the peer role's topic
            channel_prefix: Topic prefix
            owns_client: Close the client together with the channel
        """
        self._client = client
        self._session_id = session_id
        self._role = role
        self._owns_client = owns_client
        self._own_topic = topic_for(channel_prefix, session_id, role)
        self._peer_topic = topic_for(channel_prefix, session_id, role.peer)
        self._pubsub = client.pubsub()
        self._connected = False
        self._reading = False
        self._released = False

    @classmethod
    async def connect(
        cls,
        url: str,
        session_id: str,
        role: Role,
        channel_prefix: str = "signaling:",
    ) -> "RedisSignalingChannel":
        """Create a client for ``url`` and open a subscribed channel on it.

        Raises:
            ConnectionError: If Redis is unreachable
        """
        client = aioredis.from_url(url)
        try:
            await client.ping()
        except RedisError as e:
            await client.aclose()
            raise ConnectionError(f"Failed to connect to Redis at {url}: {e}") from e

        channel = cls(client, session_id, role, channel_prefix, owns_client=True)
        await channel.open()
        return channel

    @property
    def session_id(self) -> str:
        """Get session identifier."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Check if the channel is subscribed and open."""
        return self._connected

    async def open(self) -> None:
        """Subscribe to this role's topic."""
        if self._connected:
            return

        await self._pubsub.subscribe(self._own_topic)
        self._connected = True

        logger.info(
            "Redis channel subscribed",
            extra={"session_id": self._session_id, "topic": self._own_topic},
        )

    async def send(self, message: Message) -> None:
        """Publish a message to the peer's topic.

        Raises:
            ConnectionError: If the channel is closed or Redis fails
        """
        if not self._connected:
            raise ConnectionError("Redis channel is closed")

        try:
            await self._client.publish(self._peer_topic, encode_message(message))
        except RedisError as e:
            raise ConnectionError(f"Redis publish failed: {e}") from e

        logger.debug(
            "Signaling message sent",
            extra={"session_id": self._session_id, "type": message.type},
        )

    async def messages(self) -> AsyncIterator[Message]:
        """Yield messages published to this role's topic until closed.

        Raises:
            ConnectionError: If the Redis connection breaks while open
        """
        self._reading = True
        try:
            async for item in self._pubsub.listen():
                if item.get("type") != "message":
                    continue

                data = item.get("data")
                if data == _CLOSED_SENTINEL:
                    logger.info(
                        "Redis channel closed by peer",
                        extra={"session_id": self._session_id},
                    )
                    self._connected = False
                    return

                try:
                    message = parse_message(data)
                except ProtocolViolation as e:
                    logger.warning(
                        "Dropping malformed signaling frame",
                        extra={"session_id": self._session_id, "error": str(e)},
                    )
                    continue

                yield message

        except RedisError as e:
            if not self._connected:
                return
            self._connected = False
            raise ConnectionError(f"Redis subscription failed: {e}") from e
        finally:
            self._reading = False
            if not self._connected:
                await self._release()

    async def close(self) -> None:
        """Signal closure to both topics and release the subscription."""
        if not self._connected:
            return

        logger.info("Closing Redis channel", extra={"session_id": self._session_id})

        try:
            await self._client.publish(self._peer_topic, _CLOSED_SENTINEL)
            await self._client.publish(self._own_topic, _CLOSED_SENTINEL)
        except RedisError as e:
            logger.warning(
                "Error publishing close sentinel",
                extra={"session_id": self._session_id, "error": str(e)},
            )
        finally:
            self._connected = False
            # An active reader releases once it sees the sentinel
            if not self._reading:
                await self._release()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._pubsub.aclose()
        if self._owns_client:
            await self._client.aclose()
