"""Signaling server entry point.

Runs the browser-to-file responder: browsers connect over WebSocket, send an
SDP offer and trickle their candidates; every connection becomes a responder
session backed by an aiortc peer connection that records or discards the
received media.
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from peer_signaling.aiortc_adapter import create_aiortc_adapter
from peer_signaling.config import SignalingConfig
from peer_signaling.health import setup_health_routes
from peer_signaling.protocol import Role
from peer_signaling.supervisor import SessionSupervisor
from peer_signaling.transport.websocket_transport import WebSocketSignalingTransport
from peer_signaling.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def accept_loop(transport: WebSocketSignalingTransport, supervisor: SessionSupervisor) -> None:
    """Open a responder session for every accepted channel."""
    while True:
        channel = await transport.accept_channel()
        logger.info("New signaling channel accepted", extra={"session_id": channel.session_id})
        try:
            await supervisor.open_session(channel, Role.RESPONDER)
        except ValueError as e:
            logger.warning(
                "Rejecting signaling channel",
                extra={"session_id": channel.session_id, "error": str(e)},
            )
            await channel.close()


async def start_server(config: SignalingConfig) -> None:
    """Run the signaling server until cancelled."""
    if not config.websocket.enabled:
        raise RuntimeError("WebSocket transport is disabled; nothing to serve")

    supervisor = SessionSupervisor(
        create_aiortc_adapter,
        media_config=config.media,
        negotiation_config=config.negotiation,
    )

    transport = WebSocketSignalingTransport(
        host=config.websocket.host,
        port=config.websocket.port,
        max_connections=config.websocket.max_connections,
        max_message_bytes=config.websocket.max_message_bytes,
    )
    await transport.start()

    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application()
        setup_health_routes(health_app, supervisor, transport)
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health.port)
        await site.start()
        logger.info("Health check server started", extra={"port": config.health.port})

    try:
        logger.info("Signaling server ready", extra={"port": transport.port})
        await accept_loop(transport, supervisor)
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down signaling server")

        try:
            await asyncio.wait_for(
                supervisor.close_all(), timeout=config.graceful_shutdown_timeout_s
            )
        except TimeoutError:
            logger.warning(
                "Sessions did not close within shutdown timeout",
                extra={"remaining": len(supervisor)},
            )

        await transport.stop()

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        logger.info("Signaling server stopped")


def main() -> None:
    """Entry point for the signaling server."""
    parser = argparse.ArgumentParser(description="WebRTC signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs") / "signaling.yaml",
        help="Path to signaling config YAML file",
    )
    parser.add_argument("--port", type=int, default=None, help="Override WebSocket port")
    parser.add_argument(
        "--record",
        type=str,
        default=None,
        help="Record received media, one file per session (out.mp4 becomes out-<session>.mp4)",
    )
    args = parser.parse_args()

    config = SignalingConfig.from_yaml_with_defaults(args.config)
    if args.port is not None:
        config.websocket.port = args.port
    if args.record is not None:
        config.media.record_path = args.record

    setup_logging(config.log_level, json_format=config.json_logs)

    try:
        asyncio.run(start_server(config))
    except KeyboardInterrupt:
        logger.info("Signaling server interrupted")


if __name__ == "__main__":
    main()
