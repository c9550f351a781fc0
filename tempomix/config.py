"""
tempomix/config.py

Application configuration via Pydantic Settings, plus the per-queue
MixingOptions model.

Process-wide values can be overridden with environment variables or a .env file:
    MIXING_DELAY_MILLISECONDS=50
    SIGNATURE_SPECIFIC_DELAY=true
    ALLOW_DUPLICATES=false
    STORE_BACKEND=sqlite

MixingOptions accepts the camelCase option keys used by packet producers
(mixingDelayMilliseconds, signatureSpecificDelay, allowDuplicates) as well as
the snake_case attribute names.
"""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MIXING_DELAY_MS = 25
DEFAULT_GROUPING_KEY_PATH = "identifier.value"
DEFAULT_ORIGIN_PATH = "origin"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Windowing
    MIXING_DELAY_MILLISECONDS: int = DEFAULT_MIXING_DELAY_MS
    SIGNATURE_SPECIFIC_DELAY: bool = False
    ALLOW_DUPLICATES: bool = False
    IDLE_POLL_MILLISECONDS: int | None = None   # None -> same as mixing delay
    FLUSH_MAX_RETRIES: int = 3

    # Packet layout
    GROUPING_KEY_PATH: str = DEFAULT_GROUPING_KEY_PATH
    ORIGIN_PATH: str = DEFAULT_ORIGIN_PATH

    # Storage
    STORE_BACKEND: str = "memory"
    DB_PATH: str = "data/packets.db"

    # Queues
    INPUT_QUEUE_SIZE: int = 10_000
    OUTPUT_QUEUE_SIZE: int = 1_000

    # Logging
    STATS_INTERVAL_SECONDS: float = 30.0
    LOG_LEVEL: str = "INFO"

    @field_validator("STORE_BACKEND", mode="before")
    @classmethod
    def normalise_backend(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in ("memory", "sqlite"):
                raise ValueError(f"STORE_BACKEND must be 'memory' or 'sqlite', got {v!r}")
        return v

    @field_validator("MIXING_DELAY_MILLISECONDS")
    @classmethod
    def delay_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("MIXING_DELAY_MILLISECONDS must be positive")
        return v


class MixingOptions(BaseModel):
    """Options for a single TemporalMixingQueue."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    mixing_delay_ms: int = Field(
        default=DEFAULT_MIXING_DELAY_MS, gt=0, alias="mixingDelayMilliseconds"
    )
    signature_specific_delay: bool = Field(default=False, alias="signatureSpecificDelay")
    allow_duplicates: bool = Field(default=False, alias="allowDuplicates")
    idle_poll_ms: int | None = Field(default=None, gt=0, alias="idlePollMilliseconds")
    flush_max_retries: int = Field(default=3, ge=0, alias="flushMaxRetries")
    grouping_key_path: str = Field(default=DEFAULT_GROUPING_KEY_PATH, alias="groupingKeyPath")
    origin_path: str = Field(default=DEFAULT_ORIGIN_PATH, alias="originPath")

    @field_validator("grouping_key_path", "origin_path")
    @classmethod
    def path_not_empty(cls, v: str) -> str:
        if not v or any(not part for part in v.split(".")):
            raise ValueError(f"invalid field path {v!r}")
        return v

    @property
    def idle_poll_seconds(self) -> float:
        return (self.idle_poll_ms or self.mixing_delay_ms) / 1000.0

    @property
    def mixing_delay_seconds(self) -> float:
        return self.mixing_delay_ms / 1000.0

    @classmethod
    def coerce(cls, options: MixingOptions | Mapping[str, Any] | None) -> MixingOptions:
        """Accept an existing instance, a plain mapping, or None (all defaults)."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls.model_validate(dict(options))

    @classmethod
    def from_settings(cls, s: Settings) -> MixingOptions:
        return cls(
            mixing_delay_ms=s.MIXING_DELAY_MILLISECONDS,
            signature_specific_delay=s.SIGNATURE_SPECIFIC_DELAY,
            allow_duplicates=s.ALLOW_DUPLICATES,
            idle_poll_ms=s.IDLE_POLL_MILLISECONDS,
            flush_max_retries=s.FLUSH_MAX_RETRIES,
            grouping_key_path=s.GROUPING_KEY_PATH,
            origin_path=s.ORIGIN_PATH,
        )


settings = Settings()
