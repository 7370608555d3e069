"""Unit tests for /health, /liveness and /sessions endpoints."""

from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from peer_signaling.health import setup_health_routes
from peer_signaling.protocol import Role
from peer_signaling.supervisor import SessionSupervisor
from tests.helpers.signaling_test_utils import FakeConnectionAdapter, RecordingChannel


@pytest.fixture
def transport() -> MagicMock:
    """Create a mock signaling transport."""
    transport = MagicMock()
    transport.is_running = True
    transport.transport_type = "websocket"
    return transport


@pytest_asyncio.fixture
async def supervisor() -> AsyncGenerator[SessionSupervisor, None]:
    supervisor = SessionSupervisor(lambda session_id, role: FakeConnectionAdapter())
    yield supervisor
    await supervisor.close_all()


@pytest_asyncio.fixture
async def client(
    supervisor: SessionSupervisor, transport: MagicMock
) -> AsyncGenerator[Any, None]:
    """Create test client."""
    app = web.Application()
    setup_health_routes(app, supervisor, transport)
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
async def test_health_ok(client: Any) -> None:
    """Test /health while the transport is running."""
    resp = await client.get("/health")
    assert resp.status == 200

    data = await resp.json()
    assert data["status"] == "healthy"
    assert data["transport"] == "websocket"
    assert data["active_sessions"] == 0
    assert data["uptime_seconds"] >= 0


@pytest.mark.asyncio
async def test_health_unavailable_when_transport_stopped(
    client: Any, transport: MagicMock
) -> None:
    """Test /health returns 503 once the transport stops."""
    transport.is_running = False

    resp = await client.get("/health")
    assert resp.status == 503
    assert (await resp.json())["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_liveness(client: Any, transport: MagicMock) -> None:
    """Test /liveness ignores transport state."""
    transport.is_running = False

    resp = await client.get("/liveness")
    assert resp.status == 200
    assert (await resp.json())["status"] == "alive"


@pytest.mark.asyncio
async def test_sessions_summary(client: Any, supervisor: SessionSupervisor) -> None:
    """Test /sessions lists live session metrics."""
    await supervisor.open_session(RecordingChannel("room-1"), Role.INITIATOR)

    resp = await client.get("/sessions")
    assert resp.status == 200

    data = await resp.json()
    assert len(data["sessions"]) == 1
    session = data["sessions"][0]
    assert session["session_id"] == "room-1"
    assert session["role"] == "initiator"
    assert session["state"] == "awaiting_answer"
    assert session["offers_sent"] == 1
