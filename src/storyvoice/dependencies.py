"""Explicitly constructed service container handed to each session coordinator."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import httpx

from .config import Settings
from .llm import ChatClient
from .services.audio_sequencer import AudioSequencer
from .services.collaborators import (
    AudioPlayer,
    AudioSession,
    NullAudioSession,
    SpeechToText,
    UnavailableSpeechToText,
)
from .services.illustration_prompt import IllustrationPromptExtractor
from .services.image_gen_service import ImageGenProvider, RunwareImageClient
from .services.image_queue import ImageGenerationQueue
from .services.tts_service import TTSGateway
from .timing import TimingLogger

logger = logging.getLogger(__name__)


@dataclass
class AppDependencies:
    """Shared clients plus factories for the per-session stateful components.

    The TTS gateway and HTTP clients are shared by every session. Each session
    coordinator gets its own Audio Sequencer and Image Generation Queue, since
    those hold the state of one story.
    """

    settings: Settings
    chat_client: ChatClient
    tts: TTSGateway
    image_provider: ImageGenProvider
    image_http_client: httpx.AsyncClient
    speech_to_text: SpeechToText = field(default_factory=UnavailableSpeechToText)
    audio_session: AudioSession = field(default_factory=NullAudioSession)
    timing: TimingLogger = field(default_factory=TimingLogger)

    def make_image_queue(self) -> ImageGenerationQueue:
        """New queue caching into its own subdirectory of ``image_cache_dir``."""
        settings = self.settings
        return ImageGenerationQueue(
            self.image_provider,
            http_client=self.image_http_client,
            cache_dir=Path(settings.image_cache_dir) / uuid.uuid4().hex,
            max_images=settings.max_story_images,
            max_pending=settings.max_pending_image_gens,
            max_concurrent=settings.max_concurrent_image_gens,
            min_prompt_chars=settings.min_image_prompt_chars,
            retry_delay=settings.image_retry_delay,
            cache_max_files=settings.image_cache_max_files,
            timing=self.timing,
        )

    def make_sequencer(self, player: AudioPlayer) -> AudioSequencer:
        return AudioSequencer(player, temp_dir=self.settings.audio_temp_dir)

    def make_extractor(self) -> IllustrationPromptExtractor:
        return IllustrationPromptExtractor(
            self.chat_client,
            model=self.settings.summary_model,
            timeout=self.settings.summary_timeout_seconds,
            fallback_words=self.settings.summary_fallback_words,
            timing=self.timing,
        )

    async def aclose(self) -> None:
        await self.chat_client.aclose()
        await TTSGateway.close_http_client()
        await self.image_http_client.aclose()


def build_dependencies(
    settings: Settings,
    *,
    speech_to_text: Optional[SpeechToText] = None,
    audio_session: Optional[AudioSession] = None,
    image_cache_dir: Optional[Path] = None,
) -> AppDependencies:
    """Wire the production clients from ``settings``."""

    if image_cache_dir is not None:
        settings = settings.model_copy(update={"image_cache_dir": image_cache_dir})

    image_http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.image_request_timeout, connect=5.0)
    )
    image_provider = RunwareImageClient(settings, http_client=image_http_client)

    deps = AppDependencies(
        settings=settings,
        chat_client=ChatClient(settings),
        tts=TTSGateway(settings),
        image_provider=image_provider,
        image_http_client=image_http_client,
        speech_to_text=speech_to_text or UnavailableSpeechToText(),
        audio_session=audio_session or NullAudioSession(),
        timing=TimingLogger(enabled=settings.timing_events),
    )
    logger.info(
        "Dependencies ready (chat model=%s, image cache=%s)",
        settings.chat_model,
        settings.image_cache_dir,
    )
    return deps


__all__ = ["AppDependencies", "build_dependencies"]
