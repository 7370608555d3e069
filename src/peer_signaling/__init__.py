"""Peer-to-peer WebRTC signaling.

Negotiates a media session between an initiator and a responder by
exchanging SDP offers/answers and trickled ICE candidates over any ordered
signaling channel.
"""

from peer_signaling.adapter import ConnectionAdapter
from peer_signaling.config import MediaConfig, NegotiationConfig, SignalingConfig
from peer_signaling.errors import (
    CandidateRejected,
    DescriptionRejected,
    MediaEngineError,
    ProtocolViolation,
    SignalingError,
    TransportFailure,
)
from peer_signaling.orchestrator import NegotiationState, SignalingOrchestrator
from peer_signaling.protocol import (
    IceCandidateMessage,
    IceCandidatePayload,
    Role,
    SdpAnswerMessage,
    SdpOfferMessage,
    SessionDescription,
    parse_message,
)
from peer_signaling.supervisor import SessionSupervisor

__version__ = "0.1.0"

__all__ = [
    "CandidateRejected",
    "ConnectionAdapter",
    "DescriptionRejected",
    "IceCandidateMessage",
    "IceCandidatePayload",
    "MediaConfig",
    "MediaEngineError",
    "NegotiationConfig",
    "NegotiationState",
    "ProtocolViolation",
    "Role",
    "SdpAnswerMessage",
    "SdpOfferMessage",
    "SessionDescription",
    "SessionSupervisor",
    "SignalingConfig",
    "SignalingError",
    "SignalingOrchestrator",
    "TransportFailure",
    "parse_message",
]
