"""Unit tests for signaling message protocol.

Tests wire format parsing, validation and serialization.
"""

import json

import pytest
from pydantic import ValidationError

from peer_signaling.errors import ProtocolViolation
from peer_signaling.protocol import (
    IceCandidateMessage,
    IceCandidatePayload,
    Role,
    SdpAnswerMessage,
    SdpOfferMessage,
    SessionDescription,
    candidate_key,
    encode_message,
    message_to_dict,
    parse_message,
)


def test_role_peer() -> None:
    """Test that each role maps to the opposite one."""
    assert Role.INITIATOR.peer is Role.RESPONDER
    assert Role.RESPONDER.peer is Role.INITIATOR


def test_parse_offer_from_json_text() -> None:
    """Test parsing an offer frame as a browser sends it."""
    raw = json.dumps({"type": "sdp_offer", "data": {"type": "offer", "sdp": "v=0\r\n"}})

    message = parse_message(raw)

    assert isinstance(message, SdpOfferMessage)
    assert message.data.type == "offer"
    assert message.data.sdp == "v=0\r\n"


def test_parse_answer_from_bytes() -> None:
    """Test parsing a binary frame."""
    raw = b'{"type": "sdp_answer", "data": {"type": "answer", "sdp": "v=0"}}'

    message = parse_message(raw)

    assert isinstance(message, SdpAnswerMessage)
    assert message.data.type == "answer"


def test_parse_rejects_invalid_utf8_bytes() -> None:
    """Test that undecodable bytes are rejected instead of rewritten."""
    raw = b'{"type": "sdp_offer", "data": {"type": "offer", "sdp": "v=0\xff\xfe"}}'

    with pytest.raises(ProtocolViolation, match="UTF-8"):
        parse_message(raw)


def test_parse_keeps_non_ascii_sdp_unchanged() -> None:
    """Test that valid multi-byte UTF-8 reaches the payload unchanged."""
    raw = '{"type": "sdp_offer", "data": {"type": "offer", "sdp": "s=café"}}'.encode()

    message = parse_message(raw)

    assert message.data.sdp == "s=café"


def test_parse_pranswer_accepted() -> None:
    """Test that a provisional answer is a valid sdp_answer payload."""
    message = parse_message({"type": "sdp_answer", "data": {"type": "pranswer", "sdp": ""}})
    assert isinstance(message, SdpAnswerMessage)


def test_parse_candidate_with_browser_field_names() -> None:
    """Test parsing an RTCIceCandidateInit payload."""
    message = parse_message(
        {
            "type": "ice_candidate",
            "data": {
                "candidate": "candidate:1 1 udp 2130706431 192.0.2.1 5000 typ host",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
                "usernameFragment": "abcd",
            },
        }
    )

    assert isinstance(message, IceCandidateMessage)
    assert message.data is not None
    assert message.data.sdp_mid == "0"
    assert message.data.sdp_mline_index == 0
    assert message.data.username_fragment == "abcd"
    assert message.is_end_of_candidates is False


def test_parse_null_candidate() -> None:
    """Test that a null candidate is the end-of-candidates marker."""
    message = parse_message('{"type": "ice_candidate", "data": null}')

    assert isinstance(message, IceCandidateMessage)
    assert message.data is None
    assert message.is_end_of_candidates is True


def test_empty_candidate_string_marks_end_of_candidates() -> None:
    """Test the empty-string end-of-candidates form."""
    message = parse_message({"type": "ice_candidate", "data": {"candidate": "", "sdpMid": "0"}})

    assert message.data is not None
    assert message.is_end_of_candidates is True


def test_unknown_payload_fields_preserved() -> None:
    """Test that extra payload keys survive a parse/encode cycle."""
    raw = {"type": "sdp_offer", "data": {"type": "offer", "sdp": "v=0", "x-room": "lobby"}}

    encoded = json.loads(encode_message(parse_message(raw)))

    assert encoded["data"]["x-room"] == "lobby"


def test_parse_passes_models_through() -> None:
    """Test that an already validated model is returned unchanged."""
    message = SdpOfferMessage(data=SessionDescription(type="offer", sdp="v=0"))
    assert parse_message(message) is message


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "42",
        None,
        {"data": {}},
        {"type": "hangup"},
        {"type": "sdp_offer", "data": {"type": "answer", "sdp": ""}},
        {"type": "sdp_answer", "data": {"type": "offer", "sdp": ""}},
        {"type": "sdp_offer", "data": {"sdp": "v=0"}},
        {"type": "ice_candidate", "data": {"candidate": "x", "sdpMLineIndex": -1}},
    ],
)
def test_parse_rejects_invalid_messages(raw: object) -> None:
    """Test that invalid messages raise ProtocolViolation."""
    with pytest.raises(ProtocolViolation):
        parse_message(raw)


def test_messages_are_frozen() -> None:
    """Test that received messages cannot be mutated."""
    message = SdpOfferMessage(data=SessionDescription(type="offer", sdp="v=0"))

    with pytest.raises(ValidationError):
        message.data.sdp = "changed"  # type: ignore[misc]


def test_encode_uses_browser_field_names() -> None:
    """Test that candidates are serialized with camelCase keys."""
    message = IceCandidateMessage(
        data=IceCandidatePayload(candidate="candidate:1", sdpMid="audio", sdpMLineIndex=1)
    )

    wire = message_to_dict(message)

    assert wire == {
        "type": "ice_candidate",
        "data": {
            "candidate": "candidate:1",
            "sdpMid": "audio",
            "sdpMLineIndex": 1,
            "usernameFragment": None,
        },
    }


def test_encode_null_candidate() -> None:
    """Test the wire form of the end-of-candidates marker."""
    assert json.loads(encode_message(IceCandidateMessage())) == {
        "type": "ice_candidate",
        "data": None,
    }


def test_candidate_key_identity() -> None:
    """Test that equal candidates share a key and different ones do not."""
    a = IceCandidatePayload(candidate="candidate:1", sdpMid="0", sdpMLineIndex=0)
    b = IceCandidatePayload(candidate="candidate:1", sdpMid="0", sdpMLineIndex=0)
    c = IceCandidatePayload(candidate="candidate:2", sdpMid="0", sdpMLineIndex=0)

    assert candidate_key(a) == candidate_key(b)
    assert candidate_key(a) != candidate_key(c)
    assert candidate_key(None) == "null"


def test_candidate_key_keeps_per_section_end_markers_apart() -> None:
    """Test that end-of-candidates markers for different m-lines stay distinct."""
    audio = IceCandidatePayload(candidate="", sdpMid="0")
    video = IceCandidatePayload(candidate="", sdpMid="1")

    assert candidate_key(audio) != candidate_key(video)
    assert candidate_key(audio) != candidate_key(None)
