"""Extract one illustration prompt from a finished reply, racing a deadline."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..llm import ChatClient
from ..prompts import STORY_EXTRACTION_PROMPT
from ..schemas.conversation import ConversationMessage
from ..timing import TimingLogger

logger = logging.getLogger(__name__)


def fallback_prompt(story: str, words: int = 30) -> str:
    """First ``words`` whitespace-separated words of the reply."""

    return " ".join(story.split()[:words])


class IllustrationPromptExtractor:
    """Ask a cheap model for an illustration prompt, bounded by a short timeout.

    The summarization call races a fixed delay: whichever finishes first wins
    and the loser is cancelled. Errors, empty output and timeouts all fall back
    to the opening words of the reply.
    """

    def __init__(
        self,
        client: ChatClient,
        *,
        model: Optional[str] = None,
        timeout: float = 1.0,
        fallback_words: int = 30,
        timing: Optional[TimingLogger] = None,
    ):
        self._client = client
        self._model = model
        self.timeout = timeout
        self.fallback_words = fallback_words
        self._timing = timing or TimingLogger()

    async def _summarize(self, story: str) -> str:
        return await self._client.complete(
            [
                ConversationMessage(role="system", content=STORY_EXTRACTION_PROMPT),
                ConversationMessage(role="user", content=story),
            ],
            model=self._model,
        )

    async def extract(self, story: str) -> str:
        fallback = fallback_prompt(story, self.fallback_words)

        with self._timing.span("SummaryExtract"):
            summary_task = asyncio.create_task(self._summarize(story))
            try:
                _, pending = await asyncio.wait({summary_task}, timeout=self.timeout)
            finally:
                if not summary_task.done():
                    summary_task.cancel()

            if pending:
                logger.info(
                    f"Summary extraction exceeded {self.timeout:.1f}s, using fallback prompt"
                )
                return fallback

            try:
                summary = summary_task.result().strip()
            except Exception as exc:
                logger.warning(f"Summary extraction failed ({exc}), using fallback prompt")
                return fallback

        return summary or fallback


__all__ = ["IllustrationPromptExtractor", "fallback_prompt"]
