"""Signaling message protocol definitions.

Defines Pydantic models for the three signaling messages exchanged between
the initiator and the responder. Messages are JSON-encoded on the wire:

    {"type": "sdp_offer" | "sdp_answer" | "ice_candidate", "data": <payload>}

Payloads are kept opaque: unknown keys are preserved and forwarded untouched,
and all models are frozen so a received message cannot be mutated.
"""

import json
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from peer_signaling.errors import ProtocolViolation


class Role(Enum):
    """Side of a signaling session."""

    INITIATOR = "initiator"
    RESPONDER = "responder"

    @property
    def peer(self) -> "Role":
        """The opposite role."""
        return Role.RESPONDER if self is Role.INITIATOR else Role.INITIATOR


class SessionDescription(BaseModel):
    """SDP blob as produced by createOffer()/createAnswer()."""

    model_config = ConfigDict(frozen=True, extra="allow")

    type: Literal["offer", "answer", "pranswer", "rollback"] = Field(
        ..., description="Description type"
    )
    sdp: str = Field(default="", description="Session Description Protocol body")


class IceCandidatePayload(BaseModel):
    """ICE candidate blob in the browser's RTCIceCandidateInit shape.

    An empty ``candidate`` string is the end-of-candidates marker some
    engines send instead of ``null``.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    candidate: str = Field(default="", description="candidate-attribute line")
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex", ge=0)
    username_fragment: str | None = Field(default=None, alias="usernameFragment")

    @property
    def is_end_of_candidates(self) -> bool:
        """Check if this payload only marks the end of gathering."""
        return not self.candidate


class SdpOfferMessage(BaseModel):
    """Initiator → Responder: SDP offer."""

    model_config = ConfigDict(frozen=True)

    type: Literal["sdp_offer"] = "sdp_offer"
    data: SessionDescription

    @field_validator("data")
    @classmethod
    def validate_offer(cls, v: SessionDescription) -> SessionDescription:
        """Validate that the description is an offer."""
        if v.type != "offer":
            raise ValueError(f"sdp_offer must carry an offer description, got '{v.type}'")
        return v


class SdpAnswerMessage(BaseModel):
    """Responder → Initiator: SDP answer."""

    model_config = ConfigDict(frozen=True)

    type: Literal["sdp_answer"] = "sdp_answer"
    data: SessionDescription

    @field_validator("data")
    @classmethod
    def validate_answer(cls, v: SessionDescription) -> SessionDescription:
        """Validate that the description is an answer."""
        if v.type not in ("answer", "pranswer"):
            raise ValueError(f"sdp_answer must carry an answer description, got '{v.type}'")
        return v


class IceCandidateMessage(BaseModel):
    """Either direction: trickled ICE candidate.

    ``data`` is ``None`` for the end-of-candidates marker.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["ice_candidate"] = "ice_candidate"
    data: IceCandidatePayload | None = None

    @property
    def is_end_of_candidates(self) -> bool:
        """Check if this message marks the end of candidate gathering."""
        return self.data is None or self.data.is_end_of_candidates


# Union type for all signaling messages
SignalingMessage = Annotated[
    SdpOfferMessage | SdpAnswerMessage | IceCandidateMessage,
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[SdpOfferMessage | SdpAnswerMessage | IceCandidateMessage] = (
    TypeAdapter(SignalingMessage)
)

MESSAGE_TYPES = (SdpOfferMessage, SdpAnswerMessage, IceCandidateMessage)


def parse_message(raw: Any) -> SdpOfferMessage | SdpAnswerMessage | IceCandidateMessage:
    """Validate an inbound signaling message.

    Args:
        raw: A message model, a decoded JSON mapping, or a JSON text/bytes frame

    Returns:
        The validated message

    Raises:
        ProtocolViolation: If the message is not valid UTF-8 JSON or not a known message
    """
    if isinstance(raw, MESSAGE_TYPES):
        return raw

    if isinstance(raw, bytes | bytearray):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolViolation(f"Invalid UTF-8: {e}") from e

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProtocolViolation(f"Invalid JSON: {e}") from e

    if not isinstance(raw, Mapping):
        raise ProtocolViolation(f"Signaling message must be an object, got {type(raw).__name__}")

    try:
        return _MESSAGE_ADAPTER.validate_python(dict(raw))
    except ValidationError as e:
        raise ProtocolViolation(f"Invalid signaling message: {e}") from e


def encode_message(message: SdpOfferMessage | SdpAnswerMessage | IceCandidateMessage) -> str:
    """Serialize a message to its JSON wire form."""
    return message.model_dump_json(by_alias=True)


def message_to_dict(
    message: SdpOfferMessage | SdpAnswerMessage | IceCandidateMessage,
) -> dict[str, Any]:
    """Serialize a message to a JSON-compatible dictionary."""
    return message.model_dump(mode="json", by_alias=True)


def candidate_key(candidate: IceCandidatePayload | None) -> str:
    """Stable identity of a candidate, used to drop redelivered duplicates."""
    if candidate is None:
        return "null"
    return json.dumps(candidate.model_dump(mode="json", by_alias=True), sort_keys=True)
