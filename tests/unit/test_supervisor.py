"""Unit tests for the session supervisor.

Tests session lifecycle, message routing and teardown on channel close or
session failure.
"""

import asyncio
from collections.abc import AsyncIterator
from unittest.mock import Mock

import pytest
import pytest_asyncio

from peer_signaling.config import MediaConfig, NegotiationConfig
from peer_signaling.errors import DescriptionRejected, TransportFailure
from peer_signaling.orchestrator import NegotiationState
from peer_signaling.protocol import (
    IceCandidateMessage,
    Role,
    SdpAnswerMessage,
    SdpOfferMessage,
)
from peer_signaling.supervisor import SessionSupervisor
from peer_signaling.transport.base import Message
from tests.helpers.signaling_test_utils import (
    FakeConnectionAdapter,
    RecordingChannel,
    candidate,
    offer,
    wait_until,
)


class BrokenChannel(RecordingChannel):
    """Channel whose receive side fails."""

    async def messages(self) -> AsyncIterator[Message]:
        raise ConnectionError("connection reset")
        yield  # pragma: no cover


class AdapterFactory:
    """Adapter factory that remembers what it built."""

    def __init__(self) -> None:
        self.adapters: dict[str, FakeConnectionAdapter] = {}
        self.failures: dict[str, Exception] = {}

    def __call__(self, session_id: str, role: Role) -> FakeConnectionAdapter:
        adapter = FakeConnectionAdapter()
        adapter.failures.update(self.failures)
        self.adapters[session_id] = adapter
        return adapter


@pytest.fixture
def factory() -> AdapterFactory:
    return AdapterFactory()


@pytest.fixture
def on_closed() -> Mock:
    return Mock()


@pytest_asyncio.fixture
async def supervisor(factory: AdapterFactory, on_closed: Mock) -> AsyncIterator[SessionSupervisor]:
    supervisor = SessionSupervisor(factory, on_session_closed=on_closed)
    yield supervisor
    await supervisor.close_all()


@pytest.mark.asyncio
async def test_open_session_negotiates_over_channel(
    supervisor: SessionSupervisor, factory: AdapterFactory
) -> None:
    """Test that inbound channel messages reach the session's orchestrator."""
    channel = RecordingChannel("room-1")
    orchestrator = await supervisor.open_session(channel, Role.RESPONDER)

    assert "room-1" in supervisor
    assert len(supervisor) == 1
    assert supervisor.get("room-1") is orchestrator
    assert factory.adapters["room-1"].call_names() == ["open"]

    channel.inject(SdpOfferMessage(data=offer()))
    await wait_until(lambda: len(channel.sent) == 1)

    assert isinstance(channel.sent[0], SdpAnswerMessage)
    assert orchestrator.state is NegotiationState.CONNECTED


@pytest.mark.asyncio
async def test_duplicate_session_rejected(supervisor: SessionSupervisor) -> None:
    """Test that a second session with the same id is refused."""
    await supervisor.open_session(RecordingChannel("room-1"), Role.RESPONDER)

    with pytest.raises(ValueError, match="already exists"):
        await supervisor.open_session(RecordingChannel("room-1"), Role.RESPONDER)

    assert len(supervisor) == 1


@pytest.mark.asyncio
async def test_peer_hangup_closes_session(
    supervisor: SessionSupervisor, factory: AdapterFactory, on_closed: Mock
) -> None:
    """Test that the session is torn down when the channel ends."""
    channel = RecordingChannel("room-1")
    orchestrator = await supervisor.open_session(channel, Role.RESPONDER)

    channel.close_from_peer()
    await wait_until(lambda: "room-1" not in supervisor)

    assert orchestrator.is_closed
    assert factory.adapters["room-1"].closed is True
    assert channel.is_connected is False
    on_closed.assert_called_once_with("room-1", None)


@pytest.mark.asyncio
async def test_session_failure_closes_session(
    supervisor: SessionSupervisor, factory: AdapterFactory, on_closed: Mock
) -> None:
    """Test that an orchestrator failure removes the session."""
    factory.failures["set_remote_description"] = ValueError("bad sdp")
    channel = RecordingChannel("room-1")
    await supervisor.open_session(channel, Role.RESPONDER)

    channel.inject(SdpOfferMessage(data=offer()))
    await wait_until(lambda: "room-1" not in supervisor)

    on_closed.assert_called_once()
    session_id, failure = on_closed.call_args.args
    assert session_id == "room-1"
    assert isinstance(failure, DescriptionRejected)


@pytest.mark.asyncio
async def test_failed_start_does_not_keep_session(
    supervisor: SessionSupervisor, factory: AdapterFactory, on_closed: Mock
) -> None:
    """Test that a session whose start() fails is removed immediately."""
    factory.failures["open"] = RuntimeError("no codecs")

    orchestrator = await supervisor.open_session(RecordingChannel("room-1"), Role.INITIATOR)

    assert orchestrator.is_closed
    assert "room-1" not in supervisor
    assert on_closed.call_count == 1


@pytest.mark.asyncio
async def test_channel_error_reports_transport_failure(
    supervisor: SessionSupervisor, on_closed: Mock
) -> None:
    """Test that a broken channel is reported as a transport failure."""
    await supervisor.open_session(BrokenChannel("room-1"), Role.RESPONDER)

    await wait_until(lambda: "room-1" not in supervisor)

    _, failure = on_closed.call_args.args
    assert isinstance(failure, TransportFailure)


@pytest.mark.asyncio
async def test_route(supervisor: SessionSupervisor) -> None:
    """Test routing messages by session id."""
    channel = RecordingChannel("room-1")
    await supervisor.open_session(channel, Role.RESPONDER)

    assert supervisor.route("unknown", SdpOfferMessage(data=offer())) is False
    assert supervisor.route("room-1", SdpOfferMessage(data=offer())) is True

    await wait_until(lambda: len(channel.sent) == 1)


@pytest.mark.asyncio
async def test_close_all(supervisor: SessionSupervisor, factory: AdapterFactory) -> None:
    """Test that close_all tears down every session."""
    for name in ("a", "b", "c"):
        await supervisor.open_session(RecordingChannel(name), Role.INITIATOR)

    assert sorted(supervisor.session_ids) == ["a", "b", "c"]

    await supervisor.close_all()

    assert len(supervisor) == 0
    assert all(adapter.closed for adapter in factory.adapters.values())


@pytest.mark.asyncio
async def test_concurrent_sessions_record_to_separate_files(factory: AdapterFactory) -> None:
    """Test that each session is given its own recording path."""
    supervisor = SessionSupervisor(factory, media_config=MediaConfig(record_path="out.mp4"))

    for name in ("s1", "s2"):
        await supervisor.open_session(RecordingChannel(name), Role.RESPONDER)

    paths = [factory.adapters[name].args_of("open")[0].record_path for name in ("s1", "s2")]
    assert paths == ["out-s1.mp4", "out-s2.mp4"]

    await supervisor.close_all()


@pytest.mark.asyncio
async def test_close_session_cancels_stuck_worker(factory: AdapterFactory) -> None:
    """Test that closing does not wait forever on an adapter call that never returns."""
    supervisor = SessionSupervisor(
        factory, negotiation_config=NegotiationConfig(close_timeout_s=0.05)
    )
    orchestrator = await supervisor.open_session(RecordingChannel("stuck"), Role.RESPONDER)
    supervisor.route("stuck", SdpOfferMessage(data=offer()))
    await wait_until(lambda: orchestrator.state is NegotiationState.CONNECTED)

    adapter = factory.adapters["stuck"]
    adapter.hold("add_ice_candidate")
    supervisor.route("stuck", IceCandidateMessage(data=candidate(1)))
    await wait_until(lambda: "add_ice_candidate" in adapter.call_names())

    await asyncio.wait_for(supervisor.close_session("stuck"), timeout=1.0)

    assert "stuck" not in supervisor
    assert adapter.closed is True
    await asyncio.wait_for(orchestrator.wait_closed(), timeout=0.1)
