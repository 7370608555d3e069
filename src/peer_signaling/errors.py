"""Signaling error hierarchy.

Errors fall into three groups with different handling policies:

- ``ProtocolViolation``: an inbound message the current state cannot accept,
  or a malformed message at the transport boundary. Logged and discarded.
- ``MediaEngineError`` / ``DescriptionRejected`` / ``CandidateRejected``:
  failures surfaced by the connection adapter. They abort the negotiation
  round and close the session.
- ``TransportFailure``: the signaling channel could not deliver a message.
  Session-fatal.
"""


class SignalingError(Exception):
    """Base class for all signaling errors."""

    pass


class ProtocolViolation(SignalingError):
    """Raised when a message cannot be accepted in the current state."""

    pass


class AdapterError(SignalingError):
    """Base class for errors surfaced by the connection adapter."""

    pass


class MediaEngineError(AdapterError):
    """Raised when the media engine fails to open or create a description."""

    pass


class DescriptionRejected(AdapterError):
    """Raised when a local or remote description is malformed or role-inconsistent."""

    pass


class CandidateRejected(AdapterError):
    """Raised when the media engine refuses a remote ICE candidate."""

    pass


class TransportFailure(SignalingError):
    """Raised when a signaling message could not be delivered."""

    pass
