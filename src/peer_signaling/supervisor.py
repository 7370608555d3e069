"""Session supervisor.

Owns the mapping from session id to orchestrator. For every session it
creates the connection adapter, starts the orchestrator, pumps inbound
channel messages into it, and tears everything down when the channel closes
or the orchestrator reports a failure.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from peer_signaling.adapter import ConnectionAdapter
from peer_signaling.config import MediaConfig, NegotiationConfig
from peer_signaling.errors import SignalingError, TransportFailure
from peer_signaling.orchestrator import SignalingOrchestrator
from peer_signaling.protocol import Role
from peer_signaling.transport.base import SignalingChannel

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, Role], ConnectionAdapter]
SessionClosedCallback = Callable[[str, SignalingError | None], None]


@dataclass
class ManagedSession:
    """Resources held for one supervised session."""

    orchestrator: SignalingOrchestrator
    channel: SignalingChannel
    pump_task: asyncio.Task[None] | None = None


class SessionSupervisor:
    """Creates, routes to and tears down one orchestrator per session id."""

    def __init__(
        self,
        adapter_factory: AdapterFactory,
        media_config: MediaConfig | None = None,
        negotiation_config: NegotiationConfig | None = None,
        on_session_closed: SessionClosedCallback | None = None,
    ) -> None:
        """Initialize supervisor.

        Args:
            adapter_factory: Builds a fresh adapter for (session_id, role)
            media_config: Media configuration handed to every session's start(),
                with record_path made unique per session
            negotiation_config: Orchestrator behaviour switches
            on_session_closed: Called with the session id and failure (if any)
                after a session has been torn down
        """
        self._adapter_factory = adapter_factory
        self._media_config = media_config or MediaConfig()
        self._negotiation_config = negotiation_config or NegotiationConfig()
        self._on_session_closed = on_session_closed
        self._sessions: dict[str, ManagedSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def session_ids(self) -> list[str]:
        """Ids of all live sessions."""
        return list(self._sessions)

    def get(self, session_id: str) -> SignalingOrchestrator | None:
        """Look up a live session's orchestrator."""
        managed = self._sessions.get(session_id)
        return managed.orchestrator if managed else None

    async def open_session(
        self,
        channel: SignalingChannel,
        role: Role,
        media_config: MediaConfig | None = None,
    ) -> SignalingOrchestrator:
        """Create and start an orchestrator for a new channel.

        Returns:
            The session's orchestrator (already closed if start() failed)

        Raises:
            ValueError: If a session with the same id is already live
        """
        session_id = channel.session_id
        if session_id in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")

        adapter = self._adapter_factory(session_id, role)
        orchestrator = SignalingOrchestrator(
            channel,
            adapter,
            role,
            config=self._negotiation_config,
            on_failure=self._handle_failure,
        )
        managed = ManagedSession(orchestrator=orchestrator, channel=channel)
        self._sessions[session_id] = managed

        logger.info(
            "Session opened",
            extra={"session_id": session_id, "role": role.value, "active": len(self._sessions)},
        )

        await orchestrator.start((media_config or self._media_config).for_session(session_id))

        if orchestrator.is_closed:
            await self.close_session(session_id)
        else:
            managed.pump_task = asyncio.create_task(
                self._pump(managed), name=f"signaling-pump-{session_id}"
            )

        return orchestrator

    def route(self, session_id: str, message: object) -> bool:
        """Hand a message to the matching orchestrator.

        Returns:
            False if no live session has this id
        """
        managed = self._sessions.get(session_id)
        if managed is None:
            logger.warning("Message for unknown session", extra={"session_id": session_id})
            return False

        managed.orchestrator.on_transport_message(message)
        return True

    async def close_session(self, session_id: str) -> None:
        """Tear down a session's orchestrator and channel."""
        managed = self._sessions.pop(session_id, None)
        if managed is None:
            return

        orchestrator = managed.orchestrator
        await orchestrator.close()
        await orchestrator.wait_closed(self._negotiation_config.close_timeout_s)

        try:
            await managed.channel.close()
        except Exception as e:
            logger.warning(
                "Error closing signaling channel",
                extra={"session_id": session_id, "error": str(e)},
            )

        task = managed.pump_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        logger.info(
            "Session closed",
            extra={
                **orchestrator.get_metrics_summary(),
                "failure": str(orchestrator.failure) if orchestrator.failure else None,
                "active": len(self._sessions),
            },
        )

        if self._on_session_closed is not None:
            self._on_session_closed(session_id, orchestrator.failure)

    async def close_all(self) -> None:
        """Tear down every live session."""
        for session_id in list(self._sessions):
            await self.close_session(session_id)

    async def _pump(self, managed: ManagedSession) -> None:
        orchestrator = managed.orchestrator
        session_id = orchestrator.session_id
        try:
            async for message in managed.channel.messages():
                orchestrator.on_transport_message(message)
        except ConnectionError as e:
            if not orchestrator.is_closed:
                orchestrator.failure = TransportFailure(str(e))
                logger.error(
                    "Signaling channel failed",
                    extra={"session_id": session_id, "error": str(e)},
                )
        except asyncio.CancelledError:
            return

        # Channel closed by the peer or by a failure
        await self.close_session(session_id)

    async def _handle_failure(
        self, orchestrator: SignalingOrchestrator, error: SignalingError
    ) -> None:
        await self.close_session(orchestrator.session_id)
