"""Configuration schema for the signaling service.

Defines Pydantic models for loading and validating signaling configuration
from YAML files and environment variables.
"""

import re
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_ICE_SCHEMES = ("stun:", "stuns:", "turn:", "turns:")


class IceServerConfig(BaseModel):
    """STUN/TURN server entry handed to the connection engine."""

    urls: list[str] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"],
        min_length=1,
        description="STUN/TURN URLs",
    )
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate that every URL uses a STUN or TURN scheme."""
        for url in v:
            if not url.startswith(VALID_ICE_SCHEMES):
                raise ValueError(
                    f"ICE server URL must start with one of {list(VALID_ICE_SCHEMES)}, got '{url}'"
                )
        return v


class MediaConfig(BaseModel):
    """Media configuration passed to the connection adapter on start().

    Example usage:
        ```yaml
        media:
          audio: true
          video: true
          record_path: "recordings/session.mp4"
        ```
    """

    audio: bool = Field(default=True, description="Negotiate an audio m-line")
    video: bool = Field(default=True, description="Negotiate a video m-line")
    data_channel: str | None = Field(
        default=None,
        description="Label of a data channel to open (initiator only)",
    )
    record_path: str | None = Field(
        default=None,
        description="Record received media to this file (optional, discarded if None)",
    )
    ice_servers: list[IceServerConfig] = Field(
        default_factory=lambda: [IceServerConfig()],
        description="STUN/TURN servers",
    )

    def for_session(self, session_id: str) -> "MediaConfig":
        """Return a copy whose record_path is unique to one session.

        A ``{session_id}`` placeholder in record_path is filled in; otherwise
        the session id is appended to the file stem ("out.mp4" becomes
        "out-<session_id>.mp4"). Characters other than letters, digits,
        ``_`` and ``-`` in the id are replaced with ``_``.
        """
        if self.record_path is None:
            return self

        safe_id = re.sub(r"[^\w-]", "_", session_id)
        if "{session_id}" in self.record_path:
            path = self.record_path.replace("{session_id}", safe_id)
        else:
            record_path = Path(self.record_path)
            path = str(record_path.with_stem(f"{record_path.stem}-{safe_id}"))

        return self.model_copy(update={"record_path": path})


class WebSocketConfig(BaseModel):
    """WebSocket signaling transport configuration."""

    enabled: bool = Field(default=True, description="Enable WebSocket transport")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8829, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent sessions")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum signaling frame size"
    )


class NegotiationConfig(BaseModel):
    """Orchestrator behaviour switches."""

    dedupe_candidates: bool = Field(
        default=True,
        description="Drop remote candidates already seen in the current round",
    )
    allow_remote_renegotiation: bool = Field(
        default=True,
        description="Accept a new offer from the initiator after the session is connected",
    )
    close_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for a closing session's worker before cancelling it",
    )


class HealthConfig(BaseModel):
    """Health check HTTP endpoint configuration."""

    enabled: bool = Field(default=True, description="Enable /health endpoint")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=8830, ge=1024, le=65535, description="Bind port")


class SignalingConfig(BaseModel):
    """Root signaling configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    negotiation: NegotiationConfig = Field(default_factory=NegotiationConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    json_logs: bool = Field(default=False, description="Emit JSON log lines")
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the log level name."""
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {list(VALID_LOG_LEVELS)}, got '{v}'")
        return level

    @classmethod
    def from_yaml(cls, path: Path) -> "SignalingConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        # Apply WebSocket environment variable overrides
        if host := os.getenv("SIGNALING_HOST"):
            data.setdefault("websocket", {})["host"] = host

        if port := os.getenv("SIGNALING_PORT"):
            data.setdefault("websocket", {})["port"] = int(port)

        # A single STUN server replaces the configured list
        if stun_url := os.getenv("STUN_URL"):
            data.setdefault("media", {})["ice_servers"] = [{"urls": [stun_url]}]

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "SignalingConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
