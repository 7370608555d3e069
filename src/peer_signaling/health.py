"""Health check endpoints for the signaling server.

Provides HTTP health endpoints for load balancers and container probes, and a
JSON summary of the live signaling sessions.
"""

import logging
import time
from typing import Any

from aiohttp import web

from peer_signaling.supervisor import SessionSupervisor

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the signaling server.

    Provides /health, which checks that the signaling transport is accepting
    connections, and /sessions, which lists per-session negotiation metrics.
    """

    def __init__(self, supervisor: SessionSupervisor, transport: Any = None) -> None:
        """Initialize health check handler.

        Args:
            supervisor: Session supervisor to report on
            transport: SignalingTransport instance (optional)
        """
        self.supervisor = supervisor
        self.transport = transport
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Transport is running
            503 Service Unavailable: Transport is stopped

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "transport": str | null,
            "active_sessions": int
        }
        """
        transport_ok = self.transport is None or self.transport.is_running
        status_code = 200 if transport_ok else 503

        response_data = {
            "status": "healthy" if transport_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "transport": self.transport.transport_type if self.transport else None,
            "active_sessions": len(self.supervisor),
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=status_code)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if the transport is down.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def sessions_summary(self, request: web.Request) -> web.Response:
        """Per-session negotiation metrics."""
        sessions = []
        for session_id in self.supervisor.session_ids:
            orchestrator = self.supervisor.get(session_id)
            if orchestrator is not None:
                sessions.append(orchestrator.get_metrics_summary())

        return web.json_response({"status": "ok", "sessions": sessions}, status=200)


def setup_health_routes(
    app: web.Application,
    supervisor: SessionSupervisor,
    transport: Any = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        supervisor: Session supervisor to report on
        transport: SignalingTransport instance (optional)
    """
    handler = HealthCheckHandler(supervisor=supervisor, transport=transport)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/sessions", handler.sessions_summary)

    logger.info("Health check endpoints configured: /health, /liveness, /sessions")
