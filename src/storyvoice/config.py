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

    # Language model (OpenAI-compatible chat completions)
    openai_api_key: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    chat_model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices("CHAT_MODEL", "chat_model"),
    )
    summary_model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices("SUMMARY_MODEL", "summary_model"),
    )
    request_timeout: float = Field(
        default=60.0,
        validation_alias=AliasChoices("REQUEST_TIMEOUT", "request_timeout"),
        ge=1,
    )

    # Primary TTS provider (ElevenLabs)
    elevenlabs_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ELEVEN_API_KEY", "ELEVENLABS_API_KEY", "elevenlabs_api_key"
        ),
    )
    elevenlabs_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.elevenlabs.io/v1/text-to-speech"),
        validation_alias=AliasChoices("ELEVENLABS_BASE_URL", "elevenlabs_base_url"),
    )
    elevenlabs_voice_id: str = Field(
        default="zGjIP4SZlMnY9m93k97r",
        validation_alias=AliasChoices("ELEVENLABS_VOICE_ID", "elevenlabs_voice_id"),
    )
    elevenlabs_model: str = Field(
        default="eleven_turbo_v2_5",
        validation_alias=AliasChoices("ELEVENLABS_MODEL", "elevenlabs_model"),
    )

    # Fallback TTS provider (OpenAI speech)
    openai_tts_model: str = Field(
        default="tts-1",
        validation_alias=AliasChoices("OPENAI_TTS_MODEL", "openai_tts_model"),
    )
    fallback_tts_voice: str = Field(
        default="alloy",
        validation_alias=AliasChoices("FALLBACK_TTS_VOICE", "fallback_tts_voice"),
    )
    fallback_tts_streaming_speed: float = Field(
        default=1.1,
        ge=0.25,
        le=4.0,
        validation_alias=AliasChoices(
            "FALLBACK_TTS_STREAMING_SPEED",
            "fallback_tts_streaming_speed",
        ),
    )
    tts_cache_size: int = Field(
        default=64,
        ge=1,
        validation_alias=AliasChoices("TTS_CACHE_SIZE", "tts_cache_size"),
    )

    # Image generation (Runware)
    runware_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("RUNWARE_API_KEY", "runware_api_key"),
    )
    runware_endpoint_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.runware.ai/v1/image/generate"),
        validation_alias=AliasChoices("RUNWARE_ENDPOINT_URL", "runware_endpoint_url"),
    )
    runware_model: str = Field(
        default="runware:100@1",
        validation_alias=AliasChoices("RUNWARE_MODEL", "runware_model"),
    )
    image_request_timeout: float = Field(
        default=10.0,
        ge=1,
        validation_alias=AliasChoices("IMAGE_REQUEST_TIMEOUT", "image_request_timeout"),
    )
    image_cache_dir: Path = Field(
        default_factory=lambda: Path("data/image_cache"),
        validation_alias=AliasChoices("IMAGE_CACHE_DIR", "image_cache_dir"),
    )
    image_cache_max_files: int = Field(
        default=10,
        ge=1,
        validation_alias=AliasChoices("IMAGE_CACHE_MAX_FILES", "image_cache_max_files"),
    )
    max_story_images: int = Field(
        default=10,
        ge=1,
        validation_alias=AliasChoices("MAX_STORY_IMAGES", "max_story_images"),
    )
    max_pending_image_gens: int = Field(
        default=4,
        ge=1,
        validation_alias=AliasChoices("MAX_PENDING_IMAGE_GENS", "max_pending_image_gens"),
    )
    max_concurrent_image_gens: int = Field(
        default=2,
        ge=1,
        validation_alias=AliasChoices(
            "MAX_CONCURRENT_IMAGE_GENS",
            "max_concurrent_image_gens",
        ),
    )
    min_image_prompt_chars: int = Field(
        default=30,
        ge=0,
        validation_alias=AliasChoices("MIN_IMAGE_PROMPT_CHARS", "min_image_prompt_chars"),
    )
    image_retry_delay: float = Field(
        default=0.5,
        ge=0,
        validation_alias=AliasChoices("IMAGE_RETRY_DELAY", "image_retry_delay"),
    )

    # Illustration prompt extraction
    summary_timeout_seconds: float = Field(
        default=1.0,
        gt=0,
        validation_alias=AliasChoices("SUMMARY_TIMEOUT_SECONDS", "summary_timeout_seconds"),
    )
    summary_fallback_words: int = Field(
        default=30,
        ge=1,
        validation_alias=AliasChoices("SUMMARY_FALLBACK_WORDS", "summary_fallback_words"),
    )

    # Playback and instrumentation
    audio_temp_dir: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("AUDIO_TEMP_DIR", "audio_temp_dir"),
    )
    timing_events: bool = Field(
        default=False,
        validation_alias=AliasChoices("TIMING_EVENTS", "timing_events"),
    )
    logging_settings_path: Path = Field(
        default_factory=lambda: Path("logging_settings.conf"),
        validation_alias=AliasChoices("LOGGING_SETTINGS_PATH", "logging_settings_path"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
