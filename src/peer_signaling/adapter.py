"""Connection adapter abstraction.

Defines the interface the signaling orchestrator consumes to drive the
underlying media/connection engine. Implementations create and apply session
descriptions, add remote ICE candidates, and emit local candidate and
connection state events back to the orchestrator.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from peer_signaling.config import MediaConfig
from peer_signaling.protocol import IceCandidatePayload, SessionDescription

logger = logging.getLogger(__name__)

LocalCandidateHandler = Callable[[IceCandidatePayload | None], None]
ConnectionStateHandler = Callable[[str], None]


class ConnectionAdapter(ABC):
    """Base class for media engine adapters.

    Each adapter instance belongs to exactly one signaling session. Event
    handlers are registered by the orchestrator via ``subscribe()`` and are
    invoked synchronously from the engine's event loop callbacks.
    """

    def __init__(self) -> None:
        self._on_local_candidate: LocalCandidateHandler | None = None
        self._on_connection_state_change: ConnectionStateHandler | None = None

    def subscribe(
        self,
        on_local_candidate: LocalCandidateHandler,
        on_connection_state_change: ConnectionStateHandler,
    ) -> None:
        """Register the orchestrator's event handlers.

        Args:
            on_local_candidate: Called for every locally gathered candidate,
                and with None once gathering is complete
            on_connection_state_change: Called with the engine's connection state
        """
        self._on_local_candidate = on_local_candidate
        self._on_connection_state_change = on_connection_state_change

    def unsubscribe(self) -> None:
        """Drop the registered event handlers."""
        self._on_local_candidate = None
        self._on_connection_state_change = None

    def emit_local_candidate(self, candidate: IceCandidatePayload | None) -> None:
        """Deliver a local candidate to the subscribed handler, if any."""
        if self._on_local_candidate is None:
            logger.debug("Local candidate emitted without subscriber, dropping")
            return
        self._on_local_candidate(candidate)

    def emit_connection_state(self, state: str) -> None:
        """Deliver a connection state change to the subscribed handler, if any."""
        if self._on_connection_state_change is None:
            return
        self._on_connection_state_change(state)

    @abstractmethod
    async def open(self, media_config: MediaConfig) -> None:
        """Acquire the local media/connection context.

        Raises:
            MediaEngineError: If the engine cannot be initialized
        """
        pass

    @abstractmethod
    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        """Create an SDP offer.

        Args:
            ice_restart: Request fresh ICE credentials for this offer

        Raises:
            MediaEngineError: If the offer cannot be created
        """
        pass

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Create an SDP answer to the applied remote offer.

        Raises:
            MediaEngineError: If the answer cannot be created
        """
        pass

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply a local description.

        Raises:
            DescriptionRejected: If the description is malformed or role-inconsistent
        """
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply a remote description.

        Raises:
            DescriptionRejected: If the description is malformed or role-inconsistent
        """
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidatePayload | None) -> None:
        """Apply a remote ICE candidate, or None for end-of-candidates.

        Raises:
            CandidateRejected: If the engine refuses the candidate
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the media/connection context."""
        pass
