"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Dialogue (OpenAI-compatible chat completions)
    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    chat_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("CHAT_BASE_URL", "chat_base_url"),
    )
    chat_model: str = Field(
        default="gpt-4",
        validation_alias=AliasChoices("CHAT_MODEL", "chat_model"),
    )
    chat_temperature: float = Field(
        default=0.7,
        ge=0,
        le=2,
        validation_alias=AliasChoices("CHAT_TEMPERATURE", "chat_temperature"),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("CHAT_TIMEOUT", "request_timeout"),
        ge=1,
    )

    # Speech synthesis
    tts_model: str = Field(
        default="tts-1",
        validation_alias=AliasChoices("TTS_MODEL", "tts_model"),
    )
    tts_voice: str = Field(
        default="coral",
        validation_alias=AliasChoices("TTS_VOICE", "tts_voice"),
    )

    # Transcription (Deepgram Flux)
    deepgram_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("DEEPGRAM_API_KEY", "deepgram_api_key"),
    )
    stt_model: str = Field(
        default="flux-general-en",
        validation_alias=AliasChoices("STT_MODEL", "stt_model"),
    )
    stt_eot_threshold: float = Field(
        default=0.7,
        ge=0.5,
        le=0.9,
        validation_alias=AliasChoices("STT_EOT_THRESHOLD", "stt_eot_threshold"),
    )
    stt_eot_timeout_ms: int = Field(
        default=5000,
        ge=500,
        le=10000,
        validation_alias=AliasChoices("STT_EOT_TIMEOUT_MS", "stt_eot_timeout_ms"),
    )
    sample_rate: int = Field(
        default=16000,
        validation_alias=AliasChoices("STT_SAMPLE_RATE", "sample_rate"),
    )

    # Keep-alive for idle transcription streams
    keepalive_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias=AliasChoices(
            "KEEPALIVE_INTERVAL_SECONDS", "keepalive_interval_seconds"
        ),
    )
    keepalive_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices(
            "KEEPALIVE_TIMEOUT_SECONDS", "keepalive_timeout_seconds"
        ),
    )
    silence_duration_ms: int = Field(
        default=500,
        ge=10,
        validation_alias=AliasChoices("SILENCE_DURATION_MS", "silence_duration_ms"),
    )

    # Turn-taking
    words_per_second: float = Field(
        default=2.5,
        gt=0,
        validation_alias=AliasChoices("WORDS_PER_SECOND", "words_per_second"),
    )
    feedback_disconnect_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        validation_alias=AliasChoices(
            "FEEDBACK_DISCONNECT_DELAY_SECONDS",
            "feedback_disconnect_delay_seconds",
        ),
    )
    auto_submit_transcripts: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "AUTO_SUBMIT_TRANSCRIPTS", "auto_submit_transcripts"
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
