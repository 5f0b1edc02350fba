"""Boundaries to the platform collaborators the conversation core drives."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from storyvoice.errors import SpeechToTextError

logger = logging.getLogger(__name__)


class SpeechToText(Protocol):
    async def start_recording(self) -> None:
        ...

    async def stop_recording(self) -> str:
        ...


class AudioSession(Protocol):
    """Scoped acquisition of the microphone and speaker."""

    async def activate(self) -> None:
        ...

    async def deactivate(self) -> None:
        ...


class AudioPlayer(Protocol):
    """Plays one persisted audio file at a time.

    ``play`` returns once the file has finished playing and raises if the
    playback engine fails. ``halt`` stops whatever is playing immediately.
    """

    async def play(self, path: Path) -> None:
        ...

    async def halt(self) -> None:
        ...


class NullAudioSession:
    """Used where the platform owns the audio session (e.g. a browser client)."""

    async def activate(self) -> None:
        logger.debug("Audio session activate (no-op)")

    async def deactivate(self) -> None:
        logger.debug("Audio session deactivate (no-op)")


class UnavailableSpeechToText:
    """Placeholder for hosts where transcription happens on the client."""

    async def start_recording(self) -> None:
        raise SpeechToTextError("Speech recognizer not available.")

    async def stop_recording(self) -> str:
        raise SpeechToTextError("Not recording.")


__all__ = [
    "AudioPlayer",
    "AudioSession",
    "NullAudioSession",
    "SpeechToText",
    "UnavailableSpeechToText",
]
