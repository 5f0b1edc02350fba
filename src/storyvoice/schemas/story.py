"""Records that flow through one story session."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class StorySession:
    """Identity of one user turn; superseded sessions lose their late results."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SentenceUnit:
    text: str
    ordinal: int


@dataclass(frozen=True)
class AudioChunk:
    data: bytes
    ordinal: int
    session_id: uuid.UUID | None = None


@dataclass(frozen=True)
class GeneratedImage:
    sentence_index: int
    url: str
    story_id: uuid.UUID

    def asdict(self) -> dict[str, object]:
        return {
            "sentence_index": self.sentence_index,
            "url": self.url,
            "story_id": str(self.story_id),
        }


@dataclass(frozen=True)
class PendingImageRequest:
    prompt: str
    sentence_index: int


__all__ = [
    "AudioChunk",
    "GeneratedImage",
    "PendingImageRequest",
    "SentenceUnit",
    "StorySession",
]
