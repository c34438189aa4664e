"""Configuration schema for the voice room coordinator.

Defines Pydantic models for loading and validating coordinator configuration
from YAML files and environment variables.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class RedisConfig(BaseModel):
    """Redis configuration for the shared voice store."""

    url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    key_prefix: str = Field(
        default="voice:",
        description="Key and channel prefix for all voice room data",
    )
    signal_ttl_seconds: int = Field(
        default=3600,
        ge=60,
        description="Retention of relayed signaling messages per session",
    )
    connection_pool_size: int = Field(
        default=10,
        ge=1,
        description="Redis connection pool size",
    )


class StoreConfig(BaseModel):
    """Session/participant/signaling store selection."""

    backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Store backend: memory (single process) or redis (shared)",
    )
    redis: RedisConfig = Field(default_factory=RedisConfig)


class IceServerConfig(BaseModel):
    """A single STUN/TURN server entry."""

    urls: list[str] = Field(..., min_length=1, description="STUN/TURN URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate that every URL uses a stun/turn scheme."""
        for url in v:
            if not url.startswith(("stun:", "turn:", "turns:")):
                raise ValueError(
                    f"ICE server URL must start with stun:, turn: or turns:, got '{url}'"
                )
        return v


def _default_ice_servers() -> list[IceServerConfig]:
    return [
        IceServerConfig(urls=["stun:stun.l.google.com:19302"]),
        IceServerConfig(urls=["stun:stun1.l.google.com:19302"]),
    ]


class RTCConfig(BaseModel):
    """Peer connection configuration."""

    ice_servers: list[IceServerConfig] = Field(default_factory=_default_ice_servers)


class CaptureConfig(BaseModel):
    """Local microphone capture constraints."""

    noise_suppression: bool = Field(
        default=True, description="Apply FFmpeg afftdn noise suppression to the capture"
    )
    auto_gain_control: bool = Field(
        default=True, description="Apply FFmpeg dynaudnorm gain normalisation to the capture"
    )
    device: str = Field(default="default", description="Capture device name")
    format: str | None = Field(
        default=None,
        description="Capture input format for the media backend (pulse, alsa, avfoundation, dshow)",
    )
    sample_rate: int = Field(default=48000, description="Capture sample rate in Hz")
    channels: int = Field(default=1, ge=1, le=2, description="Capture channel count")

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that the capture sample rate is a common device rate."""
        valid_rates = [8000, 16000, 24000, 32000, 44100, 48000]
        if v not in valid_rates:
            raise ValueError(f"Capture sample_rate must be one of {valid_rates}, got {v}")
        return v


class SpeakingConfig(BaseModel):
    """Speaking detection parameters.

    Mirrors a Web Audio AnalyserNode: byte frequency data is averaged and
    compared against ``threshold`` on the 0-255 scale.
    """

    fft_size: int = Field(default=256, description="FFT window size (power of two)")
    threshold: float = Field(
        default=30.0,
        ge=0.0,
        le=255.0,
        description="Average byte frequency level above which the user is speaking",
    )
    sample_interval_ms: int = Field(
        default=16,
        ge=1,
        le=1000,
        description="Sampling cadence (one animation frame at 60Hz by default)",
    )
    smoothing_time_constant: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Exponential smoothing across successive FFT frames",
    )
    min_decibels: float = Field(default=-100.0, description="Level mapped to byte value 0")
    max_decibels: float = Field(default=-30.0, description="Level mapped to byte value 255")

    @field_validator("fft_size")
    @classmethod
    def validate_fft_size(cls, v: int) -> int:
        """Validate FFT size is a power of two in the AnalyserNode range."""
        if v < 32 or v > 32768 or v & (v - 1):
            raise ValueError(f"fft_size must be a power of two between 32 and 32768, got {v}")
        return v

    @model_validator(mode="after")
    def validate_decibel_range(self) -> "SpeakingConfig":
        """Validate that min_decibels is below max_decibels."""
        if self.min_decibels >= self.max_decibels:
            raise ValueError(
                f"min_decibels ({self.min_decibels}) must be less than "
                f"max_decibels ({self.max_decibels})"
            )
        return self


class SignalingConfig(BaseModel):
    """Signaling relay behaviour."""

    buffer_early_candidates: bool = Field(
        default=True,
        description="Buffer ICE candidates that arrive before their peer link exists",
    )
    max_buffered_candidates: int = Field(
        default=64,
        ge=1,
        description="Per-sender cap on buffered early candidates",
    )


class VoiceRoomConfig(BaseModel):
    """Root voice room configuration."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    rtc: RTCConfig = Field(default_factory=RTCConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    speaking: SpeakingConfig = Field(default_factory=SpeakingConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: Literal["text", "json"] = Field(default="text", description="Log format")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalise the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "VoiceRoomConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(cls._apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "VoiceRoomConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(cls._apply_env_overrides({}))

    @staticmethod
    def _apply_env_overrides(data: dict) -> dict:
        import os

        if redis_url := os.getenv("REDIS_URL"):
            store = data.setdefault("store", {})
            store.setdefault("redis", {})["url"] = redis_url
            store["backend"] = "redis"

        if backend := os.getenv("VOICE_STORE_BACKEND"):
            data.setdefault("store", {})["backend"] = backend

        if log_level := os.getenv("VOICE_LOG_LEVEL"):
            data["log_level"] = log_level

        if threshold := os.getenv("VOICE_SPEAKING_THRESHOLD"):
            data.setdefault("speaking", {})["threshold"] = float(threshold)

        return data
