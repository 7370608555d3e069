"""aiortc connection adapter.

Wraps ``aiortc.RTCPeerConnection`` behind the ConnectionAdapter interface.

aiortc does not trickle: all local candidates are gathered inside
``setLocalDescription()``. After a local description is applied the adapter
therefore reads the gathered candidates back out of the local SDP and emits
them one by one, followed by the end-of-candidates marker, so the
orchestrator sees the same event stream a browser would produce.
"""

import logging
from typing import Any

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole, MediaRecorder
from aiortc.sdp import SessionDescription as ParsedSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from peer_signaling.adapter import ConnectionAdapter
from peer_signaling.config import MediaConfig
from peer_signaling.errors import (
    CandidateRejected,
    DescriptionRejected,
    MediaEngineError,
)
from peer_signaling.protocol import IceCandidatePayload, SessionDescription

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


def to_rtc_description(description: SessionDescription) -> RTCSessionDescription:
    """Convert a wire description to aiortc's type."""
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def from_rtc_description(description: RTCSessionDescription) -> SessionDescription:
    """Convert an aiortc description to the wire type."""
    return SessionDescription(type=description.type, sdp=description.sdp)


def to_rtc_candidate(candidate: IceCandidatePayload | None) -> Any:
    """Convert a wire candidate to ``RTCIceCandidate`` (None for end-of-candidates).

    Raises:
        ValueError: If the candidate line cannot be parsed
    """
    if candidate is None or candidate.is_end_of_candidates:
        return None

    line = candidate.candidate
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX) :]

    rtc_candidate = candidate_from_sdp(line)
    rtc_candidate.sdpMid = candidate.sdp_mid
    rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
    return rtc_candidate


def gathered_candidates(sdp: str) -> list[IceCandidatePayload]:
    """Extract the candidates embedded in a local SDP as wire candidates."""
    parsed = ParsedSessionDescription.parse(sdp)
    candidates = []
    for index, media in enumerate(parsed.media):
        for rtc_candidate in media.ice_candidates:
            candidates.append(
                IceCandidatePayload(
                    candidate=CANDIDATE_PREFIX + candidate_to_sdp(rtc_candidate),
                    sdpMid=media.rtp.muxId,
                    sdpMLineIndex=index,
                )
            )
    return candidates


class AiortcConnectionAdapter(ConnectionAdapter):
    """Connection adapter backed by an aiortc peer connection.

    Remote audio/video tracks are written to ``media_config.record_path`` when
    set, otherwise discarded.
    """

    def __init__(self, session_id: str = "") -> None:
        super().__init__()
        self._session_id = session_id
        self._pc: RTCPeerConnection | None = None
        self._sink: Any = None
        self._sink_started = False
        self.data_channel: Any = None

    @property
    def peer_connection(self) -> RTCPeerConnection | None:
        """Underlying aiortc peer connection, once opened."""
        return self._pc

    def _require_pc(self) -> RTCPeerConnection:
        if self._pc is None:
            raise MediaEngineError("Connection adapter is not open")
        return self._pc

    async def open(self, media_config: MediaConfig) -> None:
        """Create the peer connection and negotiate the configured media kinds."""
        if self._pc is not None:
            raise MediaEngineError("Connection adapter is already open")

        ice_servers = [
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in media_config.ice_servers
        ]

        try:
            pc = RTCPeerConnection(RTCConfiguration(iceServers=ice_servers))
            if media_config.audio:
                pc.addTransceiver("audio", direction="recvonly")
            if media_config.video:
                pc.addTransceiver("video", direction="recvonly")
            if media_config.data_channel:
                self.data_channel = pc.createDataChannel(media_config.data_channel)
        except Exception as e:
            raise MediaEngineError(f"Failed to create peer connection: {e}") from e

        if media_config.record_path:
            self._sink = MediaRecorder(media_config.record_path)
        else:
            self._sink = MediaBlackhole()

        @pc.on("track")
        def on_track(track: Any) -> None:
            logger.info(
                "Remote track received",
                extra={"session_id": self._session_id, "kind": track.kind},
            )
            self._sink.addTrack(track)

        @pc.on("datachannel")
        def on_datachannel(channel: Any) -> None:
            self.data_channel = channel

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            if pc.connectionState == "connected" and not self._sink_started:
                self._sink_started = True
                await self._sink.start()
            self.emit_connection_state(pc.connectionState)

        self._pc = pc

    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        """Create an SDP offer.

        aiortc has no ICE restart support; the flag is logged and ignored.
        """
        pc = self._require_pc()
        if ice_restart:
            logger.warning(
                "ICE restart not supported by aiortc, sending a plain re-offer",
                extra={"session_id": self._session_id},
            )
        try:
            return from_rtc_description(await pc.createOffer())
        except Exception as e:
            raise MediaEngineError(f"createOffer failed: {e}") from e

    async def create_answer(self) -> SessionDescription:
        """Create an SDP answer."""
        pc = self._require_pc()
        try:
            return from_rtc_description(await pc.createAnswer())
        except Exception as e:
            raise MediaEngineError(f"createAnswer failed: {e}") from e

    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply the local description and emit the gathered candidates."""
        pc = self._require_pc()
        try:
            await pc.setLocalDescription(to_rtc_description(description))
        except Exception as e:
            raise DescriptionRejected(f"setLocalDescription failed: {e}") from e

        for candidate in gathered_candidates(pc.localDescription.sdp):
            self.emit_local_candidate(candidate)
        self.emit_local_candidate(None)

    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the remote description."""
        pc = self._require_pc()
        try:
            await pc.setRemoteDescription(to_rtc_description(description))
        except Exception as e:
            raise DescriptionRejected(f"setRemoteDescription failed: {e}") from e

    async def add_ice_candidate(self, candidate: IceCandidatePayload | None) -> None:
        """Apply a remote candidate."""
        pc = self._require_pc()
        try:
            await pc.addIceCandidate(to_rtc_candidate(candidate))
        except Exception as e:
            raise CandidateRejected(f"addIceCandidate failed: {e}") from e

    async def close(self) -> None:
        """Stop the media sink and close the peer connection."""
        if self._pc is None:
            return

        pc, self._pc = self._pc, None
        try:
            if self._sink is not None and self._sink_started:
                await self._sink.stop()
        finally:
            await pc.close()

        logger.info("Peer connection closed", extra={"session_id": self._session_id})


def create_aiortc_adapter(session_id: str, *_: Any) -> AiortcConnectionAdapter:
    """Adapter factory for the session supervisor."""
    return AiortcConnectionAdapter(session_id)


__all__ = [
    "AiortcConnectionAdapter",
    "create_aiortc_adapter",
    "from_rtc_description",
    "gathered_candidates",
    "to_rtc_candidate",
    "to_rtc_description",
]
