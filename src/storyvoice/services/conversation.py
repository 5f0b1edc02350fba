"""
Session Coordinator: one conversation turn from user prompt to settled reply.

Architecture:

    ┌────────────┐   ┌───────────────────┐   ┌──────────────┐   ┌────────────────┐
    │ LLM tokens │──▶│ SentenceSegmenter │──▶│ TTS tasks    │──▶│ in-order       │
    └────────────┘   └───────────────────┘   │ (concurrent) │   │ enqueuer       │
          │                                  └──────────────┘   └────────────────┘
          │ full reply                                                  │
          ▼                                                             ▼
    ┌──────────────────────┐   ┌──────────────────────┐        ┌────────────────┐
    │ IllustrationPrompt   │──▶│ ImageGenerationQueue │        │ AudioSequencer │
    │ Extractor (1s race)  │   └──────────────────────┘        └────────────────┘

TTS requests for successive sentences run concurrently, but audio reaches the
sequencer strictly in sentence order: a single enqueuer task awaits the TTS
tasks in the order they were dispatched.
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Callable, List, Optional

from storyvoice.dependencies import AppDependencies
from storyvoice.errors import VoiceError
from storyvoice.prompts import system_prompt_for
from storyvoice.schemas.conversation import ConversationMessage, Persona
from storyvoice.schemas.story import GeneratedImage, SentenceUnit, StorySession
from storyvoice.services.audio_sequencer import AudioSequencer
from storyvoice.services.collaborators import AudioPlayer
from storyvoice.services.illustration_prompt import IllustrationPromptExtractor
from storyvoice.services.image_queue import ImageGenerationQueue
from storyvoice.services.text_segmenter import SentenceSegmenter
from storyvoice.services.tts_service import TTSGateway
from storyvoice.timing import TimingLogger

logger = logging.getLogger(__name__)

SessionListener = Callable[[dict[str, Any]], None]

_MARKDOWN_CHARS = re.compile(r"[*_#>]")


def clean_text_for_tts(text: str) -> str:
    """Strip markdown emphasis characters the voice would otherwise read out."""
    return _MARKDOWN_CHARS.sub("", text).strip()


class TurnState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    IMAGE_EXTRACTION = "image_extraction"
    SETTLED = "settled"


class _SpeechDispatch:
    """Per-turn fan-out of sentences to TTS with in-order hand-off to playback."""

    def __init__(
        self,
        tts: TTSGateway,
        sequencer: AudioSequencer,
        *,
        story: StorySession,
        voice_id: Optional[str],
        on_enqueued: Callable[[SentenceUnit], None],
        timing: TimingLogger,
    ):
        self._tts = tts
        self._sequencer = sequencer
        self._story = story
        self._voice_id = voice_id
        self._on_enqueued = on_enqueued
        self._timing = timing
        self._queue: asyncio.Queue[Optional[tuple[SentenceUnit, asyncio.Task]]] = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._played: List[asyncio.Future] = []
        self._cancelled = False
        self._enqueuer = asyncio.create_task(self._enqueue_in_order())

    def dispatch(self, unit: SentenceUnit) -> None:
        if self._cancelled:
            return
        task = asyncio.create_task(self._synthesize(unit))
        self._tasks.append(task)
        self._queue.put_nowait((unit, task))

    def close(self) -> None:
        """No more sentences for this turn."""
        self._queue.put_nowait(None)

    def cancel(self) -> None:
        self._cancelled = True
        for task in self._tasks:
            task.cancel()
        self._enqueuer.cancel()

    async def wait_played(self) -> None:
        """Wait until every sentence was handed over and finished playing."""
        await self._enqueuer
        if self._played:
            await asyncio.wait(self._played)

    async def _synthesize(self, unit: SentenceUnit) -> bytes:
        with self._timing.span(f"TTSChunk#{unit.ordinal}"):
            return await self._tts.synthesize(
                clean_text_for_tts(unit.text),
                self._voice_id,
                streaming=True,
            )

    async def _enqueue_in_order(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            unit, task = item
            try:
                audio = await task
            except VoiceError as exc:
                logger.error(f"TTS chunk failed for sentence {unit.ordinal}: {exc}")
                continue
            if self._cancelled:
                return
            self._played.append(
                self._sequencer.enqueue_chunk(audio, session_id=self._story.id)
            )
            self._on_enqueued(unit)


class SessionCoordinator:
    """Owns the conversation history and drives one turn at a time.

    Observers either read the snapshot attributes (``state``,
    ``error_message``, ``agent_message``, ``is_speaking``,
    ``current_sentence_index``, ``current_story``, ``images``) or subscribe to
    the event dicts emitted on every change.
    """

    def __init__(
        self,
        deps: AppDependencies,
        player: AudioPlayer,
        *,
        sequencer: Optional[AudioSequencer] = None,
        image_queue: Optional[ImageGenerationQueue] = None,
        extractor: Optional[IllustrationPromptExtractor] = None,
    ):
        self._deps = deps
        self._llm = deps.chat_client
        self._tts = deps.tts
        self._stt = deps.speech_to_text
        self._audio_session = deps.audio_session
        self._timing = deps.timing
        self.sequencer = sequencer or deps.make_sequencer(player)
        self.image_queue = image_queue or deps.make_image_queue()
        self._extractor = extractor or deps.make_extractor()

        self.messages: List[ConversationMessage] = [
            ConversationMessage(role="system", content=system_prompt_for(None))
        ]
        self.persona: Optional[Persona] = None
        self.voice_id: Optional[str] = None

        self.state = TurnState.IDLE
        self.error_message: Optional[str] = None
        self.agent_message: Optional[str] = None
        self.is_speaking = False
        self.is_listening = False
        self.current_sentence_index = 0
        self.current_story = StorySession()
        self.image_queue.reset_for_new_story(self.current_story.id)

        self._turn_task: Optional[asyncio.Task] = None
        self._turn_lock = asyncio.Lock()
        self._submit_generation = 0
        self._dispatch: Optional[_SpeechDispatch] = None
        self._listeners: List[SessionListener] = []

        self.image_queue.add_listener(self._on_image)

    # Observation -----------------------------------------------------

    @property
    def images(self) -> tuple[GeneratedImage, ...]:
        return self.image_queue.images

    def current_image(self) -> Optional[GeneratedImage]:
        return self.image_queue.image_for_sentence(self.current_sentence_index)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Session listener failed on {event.get('type')}")

    def _set_state(self, state: TurnState) -> None:
        self.state = state
        self._emit({"type": "state", "state": state.value})

    def _set_speaking(self, speaking: bool) -> None:
        if self.is_speaking != speaking:
            self.is_speaking = speaking
            self._emit({"type": "speaking", "speaking": speaking})

    def _set_agent_message(self, text: str) -> None:
        self.agent_message = text
        self._emit({"type": "agent_message", "text": text})

    def _report_error(self, message: str) -> None:
        self.error_message = message
        self._emit({"type": "error", "message": message})

    def _on_image(self, image: GeneratedImage) -> None:
        if image.story_id == self.current_story.id:
            self._emit({"type": "image", **image.asdict()})

    def _on_sentence_enqueued(self, unit: SentenceUnit) -> None:
        self._set_speaking(True)
        self.current_sentence_index += 1
        self._emit({"type": "sentence", "index": unit.ordinal, "text": unit.text})

    # Persona ---------------------------------------------------------

    def set_persona(self, persona: Optional[Persona]) -> None:
        """Swap the system prompt and voice for ``persona`` (None restores the default)."""
        self.persona = persona
        self.voice_id = persona.voice_id if persona else None
        system = ConversationMessage(role="system", content=system_prompt_for(persona))
        if self.messages and self.messages[0].role == "system":
            self.messages[0] = system
        else:
            self.messages.insert(0, system)
        logger.info(f"Persona set to {persona.display_name if persona else 'default'}")

    # Turns -----------------------------------------------------------

    def _turn_active(self) -> bool:
        task = self._turn_task
        return task is not None and not task.done() and task is not asyncio.current_task()

    def start_turn(self, prompt: str) -> asyncio.Task:
        """Run :meth:`submit` in the background."""
        return asyncio.create_task(self.submit(prompt))

    async def submit(self, prompt: str) -> None:
        """Run one turn to completion, superseding any turn still in progress.

        Submits that pile up while an earlier turn is being stopped collapse
        to the most recent one; the others return without starting a turn.
        """
        self._submit_generation += 1
        generation = self._submit_generation

        async with self._turn_lock:
            if generation != self._submit_generation:
                logger.info(f"Dropping superseded prompt: {prompt}")
                return
            if self._turn_active():
                await self.stop()
                if generation != self._submit_generation:
                    logger.info(f"Dropping superseded prompt: {prompt}")
                    return
            task = asyncio.create_task(self._run_turn(prompt))
            self._turn_task = task

        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            logger.error("Turn failed", exc_info=task.exception())
            self._report_error(VoiceError.user_message)
            self._set_state(TurnState.IDLE)

    async def _run_turn(self, prompt: str) -> None:
        self._timing.start("UserSubmit")
        logger.info(f"User prompt: {prompt}")

        await self._gate_microphone()
        self._reset_story_state()
        self.error_message = None
        self.messages.append(ConversationMessage(role="user", content=prompt))

        story = self.current_story
        segmenter = SentenceSegmenter()
        dispatch = _SpeechDispatch(
            self._tts,
            self.sequencer,
            story=story,
            voice_id=self.voice_id,
            on_enqueued=self._on_sentence_enqueued,
            timing=self._timing,
        )
        self._dispatch = dispatch
        full_reply = ""

        try:
            self._set_state(TurnState.STREAMING)
            with self._timing.span("LLMStream"):
                async for token in self._llm.stream_chat(self.messages):
                    full_reply += token
                    self._set_agent_message(full_reply)
                    for unit in segmenter.feed(token):
                        dispatch.dispatch(unit)

            self._set_state(TurnState.DRAINING)
            tail = segmenter.flush()
            if tail is not None:
                dispatch.dispatch(tail)
            dispatch.close()

            self._set_state(TurnState.IMAGE_EXTRACTION)
            image_prompt = await self._extractor.extract(full_reply)
            if story.id == self.current_story.id:
                self.image_queue.enqueue(image_prompt, 0)

            await dispatch.wait_played()
            self.messages.append(ConversationMessage(role="assistant", content=full_reply))
            self._set_state(TurnState.SETTLED)
        except VoiceError as exc:
            logger.error(f"Stream failed: {exc}")
            dispatch.cancel()
            self._report_error(exc.user_message)
            self._set_state(TurnState.IDLE)
        except asyncio.CancelledError:
            dispatch.cancel()
            raise
        finally:
            if self._dispatch is dispatch:
                self._dispatch = None
            self._set_speaking(False)
            self._timing.end("UserSubmit")

    def _reset_story_state(self) -> None:
        self.current_story = StorySession()
        self.current_sentence_index = 0
        self.image_queue.reset_for_new_story(self.current_story.id)

    async def stop(self) -> None:
        """Halt playback, abort dispatch and supersede the current story."""
        dispatch, self._dispatch = self._dispatch, None
        if dispatch is not None:
            dispatch.cancel()

        task = self._turn_task if self._turn_active() else None
        if task is not None:
            task.cancel()

        await self.sequencer.stop()
        self._set_speaking(False)

        if self.is_listening:
            await self._gate_microphone()

        self._reset_story_state()

        if task is not None:
            await asyncio.wait([task])
        self._set_state(TurnState.IDLE)

    # Direct speech ---------------------------------------------------

    async def speak(self, text: str, audio: Optional[bytes] = None) -> None:
        """Speak ``text`` (e.g. a greeting) via the cached TTS path, or play ``audio``."""
        self._set_agent_message(text)
        await self._gate_microphone()

        if audio is None:
            try:
                with self._timing.span("TTSGreeting"):
                    audio = await self._tts.synthesize(
                        clean_text_for_tts(text), self.voice_id, streaming=False
                    )
            except VoiceError as exc:
                logger.error(f"Greeting TTS failed: {exc}")
                self._report_error(exc.user_message)
                return

        self._set_speaking(True)
        try:
            played = self.sequencer.enqueue_chunk(audio, session_id=self.current_story.id)
            await asyncio.wait([played])
        finally:
            self._set_speaking(False)

    # Listening -------------------------------------------------------

    async def start_listening(self) -> None:
        """Acquire the audio session and start recording, interrupting any speech."""
        if self.is_listening:
            return
        if self._turn_active() or self.sequencer.is_playing:
            await self.stop()

        try:
            await self._audio_session.activate()
            await self._stt.start_recording()
        except VoiceError as exc:
            logger.error(f"Recording failed to start: {exc}")
            self._report_error(exc.user_message)
            await self._audio_session.deactivate()
            return
        self.is_listening = True
        self._emit({"type": "listening", "listening": True})

    async def finish_listening(self) -> Optional[str]:
        """Stop recording and submit the transcript if anything was heard."""
        if not self.is_listening:
            return None

        try:
            transcript = await self._stt.stop_recording()
        except VoiceError as exc:
            logger.error(f"Transcription failed: {exc}")
            self._report_error(exc.user_message)
            return None
        finally:
            self.is_listening = False
            await self._audio_session.deactivate()
            self._emit({"type": "listening", "listening": False})

        transcript = transcript.strip()
        if transcript:
            await self.submit(transcript)
        return transcript

    async def _gate_microphone(self) -> None:
        """Make sure the mic is not recording while the assistant speaks."""
        if not self.is_listening:
            return
        try:
            await self._stt.stop_recording()
        except VoiceError as exc:
            logger.debug(f"Ignoring partial transcript on mic gate: {exc}")
        finally:
            self.is_listening = False
            await self._audio_session.deactivate()
            self._emit({"type": "listening", "listening": False})

    async def shutdown(self) -> None:
        """Stop everything and drop this session's cached images."""
        await self.stop()
        await self.image_queue.wait_until_idle()
        self.image_queue.discard_cache()


__all__ = ["SessionCoordinator", "TurnState", "clean_text_for_tts"]
