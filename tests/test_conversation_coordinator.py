"""End-to-end turn tests for the session coordinator with fake collaborators."""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Any

import httpx
import pytest

from storyvoice.dependencies import AppDependencies
from storyvoice.errors import ServerError, SpeechToTextError
from storyvoice.schemas.conversation import Persona
from storyvoice.services.conversation import SessionCoordinator, TurnState, clean_text_for_tts
from storyvoice.services.image_queue import PNG_MAGIC

SUMMARY = "A small red fox running through a snowy pine forest at dawn"


class FakeChatClient:
    def __init__(self, tokens: list[str], *, summary: str = SUMMARY, error=None, fail_at=None):
        self.tokens = tokens
        self.summary = summary
        self.error = error
        self.fail_at = fail_at
        self.requests: list[list[Any]] = []

    async def stream_chat(self, messages, *, model=None):
        self.requests.append(list(messages))
        for index, token in enumerate(self.tokens):
            if self.error is not None and index == self.fail_at:
                raise self.error
            await asyncio.sleep(0)
            yield token

    async def complete(self, messages, *, model=None, **kwargs) -> str:
        return self.summary

    async def aclose(self) -> None:
        pass


class FakeTTS:
    """Audio is the text itself; ``delays`` make later sentences finish first."""

    def __init__(self, delays: dict[str, float] | None = None, failures=()):
        self.delays = delays or {}
        self.failures = set(failures)
        self.calls: list[tuple[str, str | None, bool]] = []

    async def synthesize(self, text: str, voice_id=None, streaming: bool = False) -> bytes:
        self.calls.append((text, voice_id, streaming))
        await asyncio.sleep(self.delays.get(text, 0.0))
        if text in self.failures:
            raise ServerError(500, "tts down")
        return text.encode()


class FakePlayer:
    def __init__(self) -> None:
        self.played: list[bytes] = []
        self.gate: asyncio.Event | None = None
        self.halted = 0

    async def play(self, path: Path) -> None:
        data = path.read_bytes()
        if self.gate is not None:
            await self.gate.wait()
        self.played.append(data)

    async def halt(self) -> None:
        self.halted += 1


class FakeImageProvider:
    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def generate_image(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return f"https://cdn.example.com/{uuid.uuid4()}.png"


class FakeSpeechToText:
    def __init__(self, transcript: str = "", error: Exception | None = None) -> None:
        self.transcript = transcript
        self.error = error
        self.recording = False

    async def start_recording(self) -> None:
        self.recording = True

    async def stop_recording(self) -> str:
        self.recording = False
        if self.error is not None:
            raise self.error
        return self.transcript


class FakeAudioSession:
    def __init__(self) -> None:
        self.active = False
        self.activations = 0

    async def activate(self) -> None:
        self.active = True
        self.activations += 1

    async def deactivate(self) -> None:
        self.active = False


def _png_client() -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PNG_MAGIC + b"body")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def build(settings, chat: FakeChatClient, tts: FakeTTS | None = None, **kwargs):
    provider = kwargs.pop("provider", None) or FakeImageProvider()
    deps = AppDependencies(
        settings=settings,
        chat_client=chat,  # type: ignore[arg-type]
        tts=tts or FakeTTS(),  # type: ignore[arg-type]
        image_provider=provider,
        image_http_client=_png_client(),
        **kwargs,
    )
    player = FakePlayer()
    coordinator = SessionCoordinator(deps, player)
    events: list[dict[str, Any]] = []
    coordinator.subscribe(events.append)
    return coordinator, player, events


def test_clean_text_for_tts_strips_markdown() -> None:
    assert clean_text_for_tts("**Bold** _move_ # > now.") == "Bold move   now."


@pytest.mark.asyncio
async def test_audio_plays_in_sentence_order_despite_tts_completion_order(settings) -> None:
    chat = FakeChatClient(["First one. ", "Second one. ", "Third one."])
    tts = FakeTTS(delays={"First one.": 0.05, "Second one.": 0.02, "Third one.": 0.0})
    coordinator, player, events = build(settings, chat, tts)

    await coordinator.submit("Tell me a story")

    assert player.played == [b"First one.", b"Second one.", b"Third one."]
    assert [call[2] for call in tts.calls] == [True, True, True]
    assert coordinator.state is TurnState.SETTLED
    assert coordinator.current_sentence_index == 3
    assert coordinator.messages[-1].role == "assistant"
    assert coordinator.messages[-1].content == "First one. Second one. Third one."
    assert coordinator.messages[-2].content == "Tell me a story"
    assert coordinator.agent_message == "First one. Second one. Third one."

    sentences = [event for event in events if event["type"] == "sentence"]
    assert [event["index"] for event in sentences] == [0, 1, 2]
    states = [event["state"] for event in events if event["type"] == "state"]
    assert states == ["streaming", "draining", "image_extraction", "settled"]


@pytest.mark.asyncio
async def test_one_image_requested_at_sentence_zero(settings) -> None:
    provider = FakeImageProvider()
    chat = FakeChatClient(["The fox runs. ", "It jumps!"])
    coordinator, _, events = build(settings, chat, provider=provider)

    await coordinator.submit("A fox story please")
    await coordinator.image_queue.wait_until_idle()

    assert len(provider.prompts) == 1
    assert provider.prompts == [SUMMARY]
    assert len(coordinator.images) == 1
    assert coordinator.images[0].sentence_index == 0
    assert coordinator.images[0].story_id == coordinator.current_story.id
    assert coordinator.current_image() == coordinator.images[0]
    assert [event["type"] for event in events].count("image") == 1


@pytest.mark.asyncio
async def test_trailing_partial_is_spoken(settings) -> None:
    chat = FakeChatClient(["Once upon a time. ", "The end"])
    coordinator, player, _ = build(settings, chat)

    await coordinator.submit("Go")

    assert player.played == [b"Once upon a time.", b"The end"]


@pytest.mark.asyncio
async def test_markdown_is_stripped_before_tts(settings) -> None:
    tts = FakeTTS()
    chat = FakeChatClient(["**Wow**, a _dragon_! "])
    coordinator, _, _ = build(settings, chat, tts)

    await coordinator.submit("Go")

    assert tts.calls[0][0] == "Wow, a dragon!"


@pytest.mark.asyncio
async def test_failed_sentence_is_skipped(settings) -> None:
    tts = FakeTTS(failures={"Broken bit."})
    chat = FakeChatClient(["Good start. ", "Broken bit. ", "Good end."])
    coordinator, player, _ = build(settings, chat, tts)

    await coordinator.submit("Go")

    assert player.played == [b"Good start.", b"Good end."]
    assert coordinator.state is TurnState.SETTLED
    assert coordinator.error_message is None


@pytest.mark.asyncio
async def test_llm_error_sets_error_message_and_ends_turn(settings) -> None:
    error = ServerError(503, "overloaded")
    chat = FakeChatClient(["Hello. ", "never"], error=error, fail_at=1)
    coordinator, _, events = build(settings, chat)

    await coordinator.submit("Go")

    assert coordinator.error_message == error.user_message
    assert coordinator.state is TurnState.IDLE
    assert coordinator.messages[-1].role == "user"
    assert {"type": "error", "message": error.user_message} in events
    assert coordinator.is_speaking is False


@pytest.mark.asyncio
async def test_stop_halts_playback_and_supersedes_story(settings) -> None:
    provider = FakeImageProvider()
    chat = FakeChatClient(["One. ", "Two. ", "Three."])
    coordinator, player, _ = build(settings, chat, provider=provider)
    player.gate = asyncio.Event()

    turn = coordinator.start_turn("Go")
    for _ in range(50):
        await asyncio.sleep(0.01)
        if coordinator.sequencer.is_playing:
            break
    old_story = coordinator.current_story

    await coordinator.stop()
    await asyncio.wait_for(turn, timeout=1.0)

    assert player.halted == 1
    assert player.played == []
    assert coordinator.state is TurnState.IDLE
    assert coordinator.current_story.id != old_story.id
    assert coordinator.image_queue.story_id == coordinator.current_story.id
    assert coordinator.images == ()
    assert coordinator.is_speaking is False
    assert all(message.role != "assistant" for message in coordinator.messages)


@pytest.mark.asyncio
async def test_submit_supersedes_running_turn(settings) -> None:
    chat = FakeChatClient(["Same reply."])
    coordinator, player, _ = build(settings, chat)
    player.gate = asyncio.Event()

    first = coordinator.start_turn("first")
    for _ in range(50):
        await asyncio.sleep(0.01)
        if coordinator.sequencer.is_playing:
            break

    player.gate = None
    await coordinator.submit("second")
    await asyncio.wait_for(first, timeout=1.0)

    assert player.played == [b"Same reply."]
    assert coordinator.state is TurnState.SETTLED
    assert [message.content for message in coordinator.messages[1:]] == [
        "first",
        "second",
        "Same reply.",
    ]


@pytest.mark.asyncio
async def test_rapid_submits_run_only_the_latest_turn(settings) -> None:
    chat = FakeChatClient(["Same reply."])
    coordinator, player, events = build(settings, chat)
    player.gate = asyncio.Event()

    first = coordinator.start_turn("first")
    for _ in range(50):
        await asyncio.sleep(0.01)
        if coordinator.sequencer.is_playing:
            break

    player.gate = None
    second = coordinator.start_turn("second")
    third = coordinator.start_turn("third")
    await asyncio.wait_for(asyncio.gather(first, second, third), timeout=1.0)

    assert player.played == [b"Same reply."]
    assert coordinator.state is TurnState.SETTLED
    assert [message.content for message in coordinator.messages[1:]] == [
        "first",
        "third",
        "Same reply.",
    ]
    states = [event["state"] for event in events if event["type"] == "state"]
    assert states.count("settled") == 1


@pytest.mark.asyncio
async def test_persona_replaces_system_prompt_and_voice(settings) -> None:
    tts = FakeTTS()
    chat = FakeChatClient(["Hello friend."])
    coordinator, _, _ = build(settings, chat, tts)

    coordinator.set_persona(
        Persona(
            id="luna",
            display_name="Luna",
            voice_id="voice-luna",
            prompt_injection="You love the stars.",
        )
    )
    await coordinator.submit("Hi")

    system = chat.requests[0][0]
    assert system.role == "system"
    assert system.content.startswith("You are Luna. You love the stars.")
    assert tts.calls[0][1] == "voice-luna"
    assert sum(1 for message in coordinator.messages if message.role == "system") == 1

    coordinator.set_persona(None)
    assert coordinator.voice_id is None
    assert not coordinator.messages[0].content.startswith("You are Luna")


@pytest.mark.asyncio
async def test_speak_uses_cached_path_or_given_audio(settings) -> None:
    tts = FakeTTS()
    coordinator, player, _ = build(settings, FakeChatClient([]), tts)

    await coordinator.speak("Hi, I'm Bamber!")
    await coordinator.speak("ignored", audio=b"prerecorded")

    assert tts.calls == [("Hi, I'm Bamber!", None, False)]
    assert player.played == [b"Hi, I'm Bamber!", b"prerecorded"]
    assert coordinator.is_speaking is False


@pytest.mark.asyncio
async def test_listening_submits_transcript(settings) -> None:
    stt = FakeSpeechToText("  tell me about owls  ")
    session = FakeAudioSession()
    chat = FakeChatClient(["Owls hoot."])
    coordinator, player, _ = build(
        settings, chat, speech_to_text=stt, audio_session=session
    )

    await coordinator.start_listening()
    assert coordinator.is_listening is True
    assert session.active is True

    transcript = await coordinator.finish_listening()

    assert transcript == "tell me about owls"
    assert coordinator.is_listening is False
    assert session.active is False
    assert chat.requests[0][-1].content == "tell me about owls"
    assert player.played == [b"Owls hoot."]


@pytest.mark.asyncio
async def test_empty_transcript_is_not_submitted(settings) -> None:
    stt = FakeSpeechToText("   ")
    chat = FakeChatClient(["unused."])
    coordinator, _, _ = build(settings, chat, speech_to_text=stt)

    await coordinator.start_listening()
    assert await coordinator.finish_listening() == ""

    assert chat.requests == []


@pytest.mark.asyncio
async def test_speech_to_text_error_is_reported(settings) -> None:
    error = SpeechToTextError("no speech")
    stt = FakeSpeechToText(error=error)
    chat = FakeChatClient(["unused."])
    coordinator, _, _ = build(settings, chat, speech_to_text=stt)

    await coordinator.start_listening()
    assert await coordinator.finish_listening() is None

    assert coordinator.error_message == error.user_message
    assert coordinator.is_listening is False
    assert chat.requests == []
