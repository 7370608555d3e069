"""Signaling orchestrator.

Mediates between a connection adapter and a signaling channel for a single
session. Each orchestrator runs one offer/answer exchange per negotiation
round, trickles ICE candidates in both directions and buffers remote
candidates until a remote description has been applied.

Every inbound event (transport message, local candidate, connection state
change, renegotiation request) goes through one queue and is handled to
completion by a single worker task, so adapter calls never interleave and
events that arrive while an adapter call is outstanding are applied
afterwards in arrival order.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from peer_signaling.adapter import ConnectionAdapter
from peer_signaling.config import MediaConfig, NegotiationConfig
from peer_signaling.errors import (
    AdapterError,
    CandidateRejected,
    DescriptionRejected,
    MediaEngineError,
    ProtocolViolation,
    SignalingError,
    TransportFailure,
)
from peer_signaling.protocol import (
    IceCandidateMessage,
    IceCandidatePayload,
    Role,
    SdpAnswerMessage,
    SdpOfferMessage,
    SessionDescription,
    candidate_key,
    parse_message,
)
from peer_signaling.transport.base import Message, SignalingChannel

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NegotiationState(Enum):
    """Negotiation state machine states.

    State Transitions:
    - IDLE → AWAITING_ANSWER (initiator: offer sent)
    - IDLE → AWAITING_OFFER (responder: started)
    - IDLE/AWAITING_OFFER → CONNECTED (responder: offer applied, answer sent)
    - AWAITING_ANSWER → CONNECTED (initiator: answer applied)
    - CONNECTED → RENEGOTIATING (new round started by either side)
    - RENEGOTIATING → CONNECTED (round completed)
    - * → CLOSED (teardown, transport failure or adapter failure)

    CONNECTED means the offer/answer exchange completed; the media
    connection itself is reported separately as ``connection_state``.
    """

    IDLE = "idle"
    AWAITING_OFFER = "awaiting_offer"
    AWAITING_ANSWER = "awaiting_answer"
    CONNECTED = "connected"
    RENEGOTIATING = "renegotiating"
    CLOSED = "closed"


# Valid state transitions
VALID_TRANSITIONS: dict[NegotiationState, set[NegotiationState]] = {
    NegotiationState.IDLE: {
        NegotiationState.AWAITING_OFFER,
        NegotiationState.AWAITING_ANSWER,
        NegotiationState.CONNECTED,
        NegotiationState.CLOSED,
    },
    NegotiationState.AWAITING_OFFER: {NegotiationState.CONNECTED, NegotiationState.CLOSED},
    NegotiationState.AWAITING_ANSWER: {NegotiationState.CONNECTED, NegotiationState.CLOSED},
    NegotiationState.CONNECTED: {NegotiationState.RENEGOTIATING, NegotiationState.CLOSED},
    NegotiationState.RENEGOTIATING: {NegotiationState.CONNECTED, NegotiationState.CLOSED},
    NegotiationState.CLOSED: set(),  # Terminal state
}

# Connection states that end the session
FAILED_CONNECTION_STATES = frozenset({"failed"})
CLOSED_CONNECTION_STATES = frozenset({"closed"})


@dataclass
class NegotiationMetrics:
    """Per-session signaling counters."""

    offers_sent: int = 0
    offers_received: int = 0
    answers_sent: int = 0
    answers_received: int = 0
    candidates_sent: int = 0
    candidates_received: int = 0
    candidates_queued: int = 0
    candidates_applied: int = 0
    duplicates_dropped: int = 0
    stale_messages: int = 0
    protocol_violations: int = 0
    negotiation_rounds: int = 0

    # Timing tracking
    session_start_ts: float = field(default_factory=time.monotonic)
    first_connected_ts: float | None = None
    session_end_ts: float | None = None

    def record_connected(self) -> None:
        """Record completion of a negotiation round."""
        if self.first_connected_ts is None:
            self.first_connected_ts = time.monotonic()

    @property
    def time_to_connected_ms(self) -> float | None:
        """Time from session start to the first completed round."""
        if self.first_connected_ts is None:
            return None
        return (self.first_connected_ts - self.session_start_ts) * 1000.0

    def finalize(self) -> None:
        """Mark session as complete and record end time."""
        if self.session_end_ts is None:
            self.session_end_ts = time.monotonic()


@dataclass(frozen=True)
class _InboundMessage:
    message: Message


@dataclass(frozen=True)
class _LocalCandidate:
    candidate: IceCandidatePayload | None


@dataclass(frozen=True)
class _ConnectionStateChange:
    state: str


@dataclass(frozen=True)
class _Renegotiate:
    ice_restart: bool


_STOP = object()

FailureCallback = Callable[["SignalingOrchestrator", SignalingError], Awaitable[None] | None]


class SignalingOrchestrator:
    """Drives the offer/answer exchange for one session.

    The initiator sends the offer on ``start()``; the responder waits for an
    offer and answers it. Inbound messages are handed in through
    ``on_transport_message()``; local adapter events arrive through
    ``on_local_candidate()`` and ``on_connection_state_change()``.

    Failures of the adapter or the channel close the session and are reported
    through ``on_failure``. Malformed or out-of-state messages are logged and
    discarded.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        adapter: ConnectionAdapter,
        role: Role,
        config: NegotiationConfig | None = None,
        on_failure: FailureCallback | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            channel: Signaling channel for this session
            adapter: Connection adapter owned by this session
            role: Local role
            config: Negotiation behaviour switches
            on_failure: Called once if the session fails
        """
        self.channel = channel
        self.adapter = adapter
        self.role = role
        self.config = config or NegotiationConfig()
        self.metrics = NegotiationMetrics()

        self.state: NegotiationState = NegotiationState.IDLE
        self.local_description_set = False
        self.remote_description_set = False
        self.connection_state = "new"
        self.failure: SignalingError | None = None

        self._on_failure = on_failure
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._started = False

        # Remote candidates received before the remote description
        self._pending_candidates: deque[IceCandidatePayload | None] = deque()
        self._seen_candidates: set[str] = set()
        # Remote descriptions applied in any round, by (type, sdp)
        self._applied_remote: set[tuple[str, str]] = set()
        self._local_candidates_closed = False

    @property
    def session_id(self) -> str:
        """Get session ID from the channel."""
        return self.channel.session_id

    @property
    def is_closed(self) -> bool:
        """Check if the session reached its terminal state."""
        return self.state is NegotiationState.CLOSED

    @property
    def pending_candidates(self) -> tuple[IceCandidatePayload | None, ...]:
        """Snapshot of remote candidates waiting for the remote description."""
        return tuple(self._pending_candidates)

    async def start(self, media_config: MediaConfig | None = None) -> None:
        """Open the adapter and begin negotiation.

        The initiator creates, applies and sends exactly one offer before this
        returns. The responder starts waiting for an offer. Failures are
        reported through ``on_failure`` and leave the session closed.

        Raises:
            RuntimeError: If the orchestrator was already started
        """
        if self._started:
            raise RuntimeError(f"Session {self.session_id} already started")
        self._started = True

        logger.info(
            "Starting signaling session",
            extra={"session_id": self.session_id, "role": self.role.value},
        )

        try:
            await self._adapter_call(MediaEngineError, self.adapter.open(media_config or MediaConfig()))
            if self.is_closed:
                return

            self.adapter.subscribe(self.on_local_candidate, self.on_connection_state_change)

            if self.role is Role.INITIATOR:
                self.metrics.negotiation_rounds += 1
                await self._send_offer(ice_restart=False)
            else:
                self.transition_state(NegotiationState.AWAITING_OFFER)

        except (AdapterError, TransportFailure) as e:
            await self._fail(e)
            return

        if not self.is_closed:
            self._worker = asyncio.create_task(self._run(), name=f"signaling-{self.session_id}")

    def on_transport_message(self, raw: Any) -> None:
        """Accept an inbound signaling message.

        Args:
            raw: Message model, decoded JSON mapping or JSON text frame
        """
        if self.is_closed:
            logger.debug(
                "Discarding message for closed session", extra={"session_id": self.session_id}
            )
            return

        try:
            message = parse_message(raw)
        except ProtocolViolation as e:
            self.metrics.protocol_violations += 1
            logger.warning(
                "Discarding malformed signaling message",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            return

        self._events.put_nowait(_InboundMessage(message))

    def on_local_candidate(self, candidate: IceCandidatePayload | None) -> None:
        """Adapter callback: a local candidate was gathered (None when complete)."""
        if self.is_closed:
            return
        self._events.put_nowait(_LocalCandidate(candidate))

    def on_connection_state_change(self, state: str) -> None:
        """Adapter callback: the media connection state changed."""
        if self.is_closed:
            return
        self._events.put_nowait(_ConnectionStateChange(state))

    def renegotiate(self, ice_restart: bool = False) -> None:
        """Start a new negotiation round from the initiator.

        Args:
            ice_restart: Request fresh ICE credentials in the new offer

        Raises:
            ProtocolViolation: If this is not a connected initiator
        """
        if self.role is not Role.INITIATOR:
            raise ProtocolViolation("Only the initiator can start a renegotiation")
        if self.state is not NegotiationState.CONNECTED:
            raise ProtocolViolation(
                f"Renegotiation requires state connected, current state is {self.state.value}"
            )
        self._events.put_nowait(_Renegotiate(ice_restart))

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        if self._worker is None:
            return
        await self._events.join()

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for the worker task to exit after close().

        Args:
            timeout: Seconds to wait before cancelling a worker still stuck
                in an adapter call (None waits indefinitely)
        """
        worker = self._worker
        if worker is None or worker.done() or worker is asyncio.current_task():
            return

        try:
            await asyncio.wait_for(asyncio.shield(worker), timeout)
        except TimeoutError:
            logger.warning(
                "Signaling worker did not exit in time, cancelling",
                extra={"session_id": self.session_id, "timeout_s": timeout},
            )
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)

    async def close(self) -> None:
        """Tear down the session.

        Marks the session closed immediately, so results of adapter calls
        still in flight are ignored when they resolve, then releases the
        adapter.
        """
        if self.is_closed:
            return

        self.transition_state(NegotiationState.CLOSED)
        self._pending_candidates.clear()
        self.adapter.unsubscribe()
        self.metrics.finalize()
        if self._worker is not None:
            self._events.put_nowait(_STOP)

        try:
            await self.adapter.close()
        except Exception as e:
            logger.warning(
                "Error closing connection adapter",
                extra={"session_id": self.session_id, "error": str(e)},
            )

    def transition_state(self, new_state: NegotiationState) -> None:
        """Transition session to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.info(
            "Session state transition",
            extra={
                "session_id": self.session_id,
                "role": self.role.value,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if event is _STOP:
                    return
                if self.is_closed:
                    continue
                await self._dispatch(event)
            except ProtocolViolation as e:
                self.metrics.protocol_violations += 1
                logger.warning(
                    "Protocol violation, discarding message",
                    extra={"session_id": self.session_id, "error": str(e)},
                )
            except SignalingError as e:
                await self._fail(e)
            except Exception as e:
                logger.exception(
                    "Unexpected error in signaling session",
                    extra={"session_id": self.session_id, "error": str(e)},
                )
                await self._fail(SignalingError(f"Unexpected error: {e}"))
            finally:
                self._events.task_done()

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, _InboundMessage):
            message = event.message
            logger.debug(
                "Signaling message received",
                extra={"session_id": self.session_id, "type": message.type},
            )
            if isinstance(message, SdpOfferMessage):
                await self._handle_offer(message.data)
            elif isinstance(message, SdpAnswerMessage):
                await self._handle_answer(message.data)
            else:
                await self._handle_remote_candidate(message.data)

        elif isinstance(event, _LocalCandidate):
            await self._handle_local_candidate(event.candidate)

        elif isinstance(event, _ConnectionStateChange):
            await self._handle_connection_state(event.state)

        elif isinstance(event, _Renegotiate):
            await self._handle_renegotiate(event.ice_restart)

    async def _handle_offer(self, offer: SessionDescription) -> None:
        self.metrics.offers_received += 1

        if self.role is Role.INITIATOR:
            raise ProtocolViolation("Initiator received an offer")

        if self._already_applied(offer):
            self.metrics.duplicates_dropped += 1
            logger.debug("Duplicate offer skipped", extra={"session_id": self.session_id})
            return

        if self.state is NegotiationState.CONNECTED:
            if not self.config.allow_remote_renegotiation:
                raise ProtocolViolation("Renegotiation offer rejected by configuration")
            self._begin_round()
        elif self.state in (NegotiationState.IDLE, NegotiationState.AWAITING_OFFER):
            self.metrics.negotiation_rounds += 1
        else:
            raise ProtocolViolation(f"Offer not acceptable in state {self.state.value}")

        await self._apply_remote_description(offer)
        if self.is_closed:
            return

        await self._drain_pending_candidates()
        if self.is_closed:
            return

        answer = await self._adapter_call(MediaEngineError, self.adapter.create_answer())
        if self.is_closed:
            return

        await self._adapter_call(DescriptionRejected, self.adapter.set_local_description(answer))
        if self.is_closed:
            return
        self.local_description_set = True

        await self._send(SdpAnswerMessage(data=answer))
        self.metrics.answers_sent += 1

        self.transition_state(NegotiationState.CONNECTED)
        self.metrics.record_connected()

    async def _handle_answer(self, answer: SessionDescription) -> None:
        self.metrics.answers_received += 1

        if self.role is Role.RESPONDER:
            raise ProtocolViolation("Responder received an answer")

        if (
            self.state not in (NegotiationState.AWAITING_ANSWER, NegotiationState.RENEGOTIATING)
            or self.remote_description_set
        ):
            self.metrics.stale_messages += 1
            logger.info(
                "Ignoring stale answer",
                extra={"session_id": self.session_id, "state": self.state.value},
            )
            return

        if self._already_applied(answer):
            self.metrics.duplicates_dropped += 1
            logger.info(
                "Answer from an earlier round skipped",
                extra={"session_id": self.session_id, "state": self.state.value},
            )
            return

        await self._apply_remote_description(answer)
        if self.is_closed:
            return

        await self._drain_pending_candidates()
        if self.is_closed:
            return

        self.transition_state(NegotiationState.CONNECTED)
        self.metrics.record_connected()

    async def _handle_remote_candidate(self, candidate: IceCandidatePayload | None) -> None:
        self.metrics.candidates_received += 1

        if self.config.dedupe_candidates:
            key = candidate_key(candidate)
            if key in self._seen_candidates:
                self.metrics.duplicates_dropped += 1
                logger.debug("Duplicate candidate skipped", extra={"session_id": self.session_id})
                return
            self._seen_candidates.add(key)

        if self.remote_description_set:
            await self._apply_candidate(candidate)
            return

        self._pending_candidates.append(candidate)
        self.metrics.candidates_queued += 1
        logger.debug(
            "Candidate queued until remote description",
            extra={"session_id": self.session_id, "queued": len(self._pending_candidates)},
        )

    async def _handle_local_candidate(self, candidate: IceCandidatePayload | None) -> None:
        if self._local_candidates_closed:
            logger.debug(
                "Local candidate after end-of-candidates, dropping",
                extra={"session_id": self.session_id},
            )
            return

        if candidate is None or candidate.is_end_of_candidates:
            self._local_candidates_closed = True

        await self._send(IceCandidateMessage(data=candidate))
        self.metrics.candidates_sent += 1

    async def _handle_connection_state(self, state: str) -> None:
        self.connection_state = state
        logger.info(
            "Connection state changed",
            extra={"session_id": self.session_id, "connection_state": state},
        )

        if state in FAILED_CONNECTION_STATES:
            raise MediaEngineError(f"Media connection {state}")
        if state in CLOSED_CONNECTION_STATES:
            await self.close()

    async def _handle_renegotiate(self, ice_restart: bool) -> None:
        if self.state is not NegotiationState.CONNECTED:
            raise ProtocolViolation(
                f"Renegotiation requires state connected, current state is {self.state.value}"
            )
        self._begin_round()
        await self._send_offer(ice_restart=ice_restart)

    async def _send_offer(self, ice_restart: bool) -> None:
        offer = await self._adapter_call(
            MediaEngineError, self.adapter.create_offer(ice_restart=ice_restart)
        )
        if self.is_closed:
            return

        await self._adapter_call(DescriptionRejected, self.adapter.set_local_description(offer))
        if self.is_closed:
            return
        self.local_description_set = True

        if self.state is NegotiationState.IDLE:
            self.transition_state(NegotiationState.AWAITING_ANSWER)

        await self._send(SdpOfferMessage(data=offer))
        self.metrics.offers_sent += 1

    def _begin_round(self) -> None:
        self.transition_state(NegotiationState.RENEGOTIATING)
        self.remote_description_set = False
        self.local_description_set = False
        self._pending_candidates.clear()
        self._seen_candidates.clear()
        self._local_candidates_closed = False
        self.metrics.negotiation_rounds += 1

    async def _apply_remote_description(self, description: SessionDescription) -> None:
        await self._adapter_call(
            DescriptionRejected, self.adapter.set_remote_description(description)
        )
        if self.is_closed:
            return
        self.remote_description_set = True
        self._applied_remote.add((description.type, description.sdp))

    def _already_applied(self, description: SessionDescription) -> bool:
        return (description.type, description.sdp) in self._applied_remote

    async def _drain_pending_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, deque()
        if pending:
            logger.debug(
                "Replaying queued candidates",
                extra={"session_id": self.session_id, "count": len(pending)},
            )

        while pending:
            await self._apply_candidate(pending.popleft())
            if self.is_closed:
                return

    async def _apply_candidate(self, candidate: IceCandidatePayload | None) -> None:
        await self._adapter_call(CandidateRejected, self.adapter.add_ice_candidate(candidate))
        if self.is_closed:
            return
        self.metrics.candidates_applied += 1

    async def _send(self, message: Message) -> None:
        try:
            await self.channel.send(message)
        except ConnectionError as e:
            raise TransportFailure(f"Failed to send {message.type}: {e}") from e

        logger.debug(
            "Signaling message sent",
            extra={"session_id": self.session_id, "type": message.type},
        )

    async def _adapter_call(self, error_type: type[AdapterError], call: Awaitable[T]) -> T:
        try:
            return await call
        except SignalingError:
            raise
        except Exception as e:
            raise error_type(str(e) or type(e).__name__) from e

    async def _fail(self, error: SignalingError) -> None:
        if self.is_closed:
            logger.debug(
                "Ignoring failure of closed session",
                extra={"session_id": self.session_id, "error": str(error)},
            )
            return

        self.failure = error
        logger.error(
            "Signaling session failed",
            extra={
                "session_id": self.session_id,
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )
        await self.close()

        if self._on_failure is not None:
            result = self._on_failure(self, error)
            if inspect.isawaitable(result):
                await result

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get session metrics summary for logging/monitoring."""
        return {
            "session_id": self.session_id,
            "role": self.role.value,
            "state": self.state.value,
            "connection_state": self.connection_state,
            "offers_sent": self.metrics.offers_sent,
            "answers_sent": self.metrics.answers_sent,
            "candidates_sent": self.metrics.candidates_sent,
            "candidates_received": self.metrics.candidates_received,
            "candidates_applied": self.metrics.candidates_applied,
            "duplicates_dropped": self.metrics.duplicates_dropped,
            "protocol_violations": self.metrics.protocol_violations,
            "negotiation_rounds": self.metrics.negotiation_rounds,
            "time_to_connected_ms": self.metrics.time_to_connected_ms,
            "session_duration_s": (
                (self.metrics.session_end_ts or time.monotonic()) - self.metrics.session_start_ts
            ),
        }
