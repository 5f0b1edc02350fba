"""
Sentence Segmenter for the Streaming TTS Pipeline.

Accumulates LLM tokens and emits speakable sentences as soon as a token
carrying sentence-terminal punctuation arrives.

Architecture:
    LLM tokens → SentenceSegmenter.feed() → TTS dispatch

Splits happen on token boundaries only: when a token contains ``.``, ``!`` or
``?`` the whole buffer (trimmed) becomes one sentence. Tokens are never cut,
so no sentence ends mid-word.

Usage:
    segmenter = SentenceSegmenter()

    async for token in llm.stream_chat(messages):
        for unit in segmenter.feed(token):
            dispatch(unit)

    final = segmenter.flush()
    if final:
        dispatch(final)
"""

from typing import List, Optional

from storyvoice.schemas.story import SentenceUnit


class SentenceSegmenter:
    """
    Stateful segmenter that turns a token stream into ``SentenceUnit`` records.

    Ordinals start at 0 and increase by one for every emitted unit, including
    the final flush, so they define playback order within a session.

    Attributes:
        terminators: Characters that close a sentence when present in a token
    """

    DEFAULT_TERMINATORS = ".!?"

    def __init__(self, terminators: str = DEFAULT_TERMINATORS):
        self.terminators = terminators
        self._buffer = ""
        self._next_ordinal = 0

    def feed(self, token: str) -> List[SentenceUnit]:
        """
        Append a token and return any sentences it completed.

        Args:
            token: Text delta from the language model

        Returns:
            Zero or one completed sentence (a list, so callers can iterate)
        """
        if not token:
            return []

        self._buffer += token

        if not any(char in self.terminators for char in token):
            return []

        sentence = self._buffer.strip()
        if not sentence:
            return []

        self._buffer = ""
        return [self._emit(sentence)]

    def flush(self) -> Optional[SentenceUnit]:
        """
        Drain trailing text at stream end.

        Returns:
            The remaining partial sentence, or None if only whitespace is left
        """
        sentence = self._buffer.strip()
        self._buffer = ""
        if not sentence:
            return None
        return self._emit(sentence)

    def reset(self) -> None:
        """Reset segmenter state for a new turn."""
        self._buffer = ""
        self._next_ordinal = 0

    @property
    def buffer_size(self) -> int:
        """Current buffer size in characters."""
        return len(self._buffer)

    def _emit(self, text: str) -> SentenceUnit:
        unit = SentenceUnit(text=text, ordinal=self._next_ordinal)
        self._next_ordinal += 1
        return unit


__all__ = ["SentenceSegmenter"]
