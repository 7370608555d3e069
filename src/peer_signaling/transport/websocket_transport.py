"""WebSocket signaling transport.

Carries signaling messages as JSON text frames over a WebSocket. The server
side (``WebSocketSignalingTransport``) hands out one channel per connection;
``connect_websocket_channel`` opens the client side.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse

import websockets
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.protocol import State

from peer_signaling.errors import ProtocolViolation
from peer_signaling.protocol import encode_message, parse_message
from peer_signaling.transport.base import Message, SignalingChannel, SignalingTransport

logger = logging.getLogger(__name__)

# Close code sent when the server is at capacity ("try again later")
CLOSE_CODE_TRY_AGAIN_LATER = 1013


class WebSocketSignalingChannel(SignalingChannel):
    """WebSocket-based signaling channel.

    Works on both server and client connections since both expose the same
    send/iterate/close surface.
    """

    def __init__(self, websocket: Any, session_id: str) -> None:
        """Initialize WebSocket channel.

        Args:
            websocket: Server or client WebSocket connection
            session_id: Unique session identifier
        """
        self._websocket = websocket
        self._session_id = session_id
        self._connected = True

        logger.info(
            "WebSocket channel initialized",
            extra={"session_id": session_id, "remote": websocket.remote_address},
        )

    @property
    def session_id(self) -> str:
        """Get unique session identifier."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Check if the channel is still open."""
        return self._connected and self._websocket.state == State.OPEN

    async def send(self, message: Message) -> None:
        """Send a signaling message as a JSON text frame.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await self._websocket.send(encode_message(message))
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

        logger.debug(
            "Signaling message sent",
            extra={"session_id": self._session_id, "type": message.type},
        )

    async def messages(self) -> AsyncIterator[Message]:
        """Receive signaling messages until the connection closes.

        Raises:
            ConnectionError: If the connection fails abnormally
        """
        try:
            async for raw_message in self._websocket:
                try:
                    message = parse_message(raw_message)
                except ProtocolViolation as e:
                    logger.warning(
                        "Dropping malformed signaling frame",
                        extra={"session_id": self._session_id, "error": str(e)},
                    )
                    continue

                logger.debug(
                    "Signaling message received",
                    extra={"session_id": self._session_id, "type": message.type},
                )
                yield message

        except websockets.exceptions.ConnectionClosedError as e:
            self._connected = False
            raise ConnectionError(f"WebSocket receive error: {e}") from e
        finally:
            self._connected = False

        logger.info(
            "WebSocket connection closed by peer",
            extra={"session_id": self._session_id},
        )

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if not self._connected and self._websocket.state == State.CLOSED:
            return

        logger.info("Closing WebSocket channel", extra={"session_id": self._session_id})

        self._connected = False
        await self._websocket.close()


class WebSocketSignalingTransport(SignalingTransport):
    """WebSocket signaling server.

    Manages the server lifecycle and creates a WebSocketSignalingChannel for
    every incoming connection. A non-root request path is used as the session
    id; otherwise one is generated.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8829,
        max_connections: int = 100,
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum inbound frame size
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._server: Any = None
        self._running = False
        self._channels: dict[str, WebSocketSignalingChannel] = {}
        self._channel_queue: asyncio.Queue[WebSocketSignalingChannel] = asyncio.Queue()

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the server is currently running."""
        return self._running

    @property
    def port(self) -> int:
        """Port the server is bound to."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    @property
    def active_channels(self) -> int:
        """Number of open connections."""
        return len(self._channels)

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the server is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

        self._running = True
        logger.info("WebSocket server started", extra={"host": self._host, "port": self.port})

    async def stop(self) -> None:
        """Stop the server and close all open channels."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")
        self._running = False

        for channel in list(self._channels.values()):
            await channel.close()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_channel(self) -> SignalingChannel:
        """Wait for the next incoming connection.

        Raises:
            RuntimeError: If the server is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._channel_queue.get()

    async def _handle_connection(self, websocket: Any) -> None:
        """Handle an incoming WebSocket connection."""
        if len(self._channels) >= self._max_connections:
            logger.warning(
                "Rejecting WebSocket connection, server at capacity",
                extra={"max_connections": self._max_connections},
            )
            await websocket.close(CLOSE_CODE_TRY_AGAIN_LATER, "server at capacity")
            return

        path = websocket.request.path.strip("/") if websocket.request else ""
        session_id = path or f"ws-{uuid.uuid4().hex[:12]}"
        if session_id in self._channels:
            logger.warning(
                "Rejecting duplicate session", extra={"session_id": session_id}
            )
            await websocket.close(1008, "session already connected")
            return

        channel = WebSocketSignalingChannel(websocket, session_id)
        self._channels[session_id] = channel
        await self._channel_queue.put(channel)

        # Keep the connection alive until it closes
        try:
            await websocket.wait_closed()
        finally:
            self._channels.pop(session_id, None)
            logger.info("WebSocket connection closed", extra={"session_id": session_id})


async def connect_websocket_channel(
    uri: str, session_id: str | None = None, max_message_bytes: int = 2**20
) -> WebSocketSignalingChannel:
    """Open the client side of a WebSocket signaling channel.

    Args:
        uri: Server URI, e.g. ``ws://localhost:8829/room-1``
        session_id: Session id for logging (defaults to the URI path)
        max_message_bytes: Maximum inbound frame size

    Raises:
        ConnectionError: If the connection cannot be established
    """
    try:
        websocket = await connect(uri, max_size=max_message_bytes)
    except (OSError, websockets.exceptions.InvalidHandshake) as e:
        raise ConnectionError(f"Failed to connect to {uri}: {e}") from e

    if session_id is None:
        session_id = urlparse(uri).path.strip("/") or f"ws-{uuid.uuid4().hex[:12]}"
    return WebSocketSignalingChannel(websocket, session_id)
