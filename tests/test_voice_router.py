from __future__ import annotations

import base64
import uuid
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from storyvoice.app import create_app
from storyvoice.dependencies import AppDependencies
from storyvoice.routers.voice import public_image_url
from storyvoice.services.image_queue import PNG_MAGIC

SUMMARY = "A small red fox running through a snowy pine forest at dawn"


class ScriptedChatClient:
    def __init__(self, tokens: list[str]) -> None:
        self.tokens = tokens

    async def stream_chat(self, messages, *, model=None):
        for token in self.tokens:
            yield token

    async def complete(self, messages, *, model=None, **kwargs) -> str:
        return SUMMARY

    async def aclose(self) -> None:
        pass


class EchoTTS:
    async def synthesize(self, text: str, voice_id=None, streaming: bool = False) -> bytes:
        return text.encode()


class StaticImageProvider:
    async def generate_image(self, prompt: str) -> str:
        return f"https://cdn.example.com/{uuid.uuid4()}.png"


def make_app(settings, tokens: list[str]):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PNG_MAGIC + b"body")

    deps = AppDependencies(
        settings=settings,
        chat_client=ScriptedChatClient(tokens),  # type: ignore[arg-type]
        tts=EchoTTS(),  # type: ignore[arg-type]
        image_provider=StaticImageProvider(),
        image_http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return create_app(deps)


def drain_turn(ws, *, ack: bool = True) -> list[dict[str, Any]]:
    """Receive until the turn settles (or goes idle), acking played chunks."""
    received: list[dict[str, Any]] = []
    while True:
        message = ws.receive_json()
        received.append(message)
        if message["type"] == "audio_chunk" and ack:
            ws.send_json({"type": "playback_done", "chunk_id": message["chunk_id"]})
        if message["type"] == "state" and message["state"] in ("settled", "idle"):
            return received


def test_submit_streams_sentences_and_audio(settings) -> None:
    app = make_app(settings, ["The fox runs. ", "It jumps!"])

    with TestClient(app) as client:
        with client.websocket_connect("/api/voice/connect?client_id=kid") as ws:
            assert ws.receive_json() == {"type": "state", "state": "idle"}
            assert "kid" in app.state.voice_manager.active_connections

            ws.send_json({"type": "heartbeat"})
            ws.send_json({"type": "submit", "text": "Tell me a fox story"})
            received = drain_turn(ws)

    audio = [
        base64.b64decode(message["data"])
        for message in received
        if message["type"] == "audio_chunk"
    ]
    assert audio == [b"The fox runs.", b"It jumps!"]
    sentences = [message["text"] for message in received if message["type"] == "sentence"]
    assert sentences == ["The fox runs.", "It jumps!"]
    agent_messages = [m["text"] for m in received if m["type"] == "agent_message"]
    assert agent_messages[-1] == "The fox runs. It jumps!"
    assert received[-1] == {"type": "state", "state": "settled"}


def test_stop_interrupts_playback(settings) -> None:
    app = make_app(settings, ["One. ", "Two. "])

    with TestClient(app) as client:
        with client.websocket_connect("/api/voice/connect") as ws:
            ws.receive_json()
            ws.send_json({"type": "submit", "text": "Count"})

            while ws.receive_json()["type"] != "audio_chunk":
                pass
            ws.send_json({"type": "stop"})

            seen: list[str] = []
            while True:
                message = ws.receive_json()
                seen.append(message["type"])
                if message["type"] == "state" and message["state"] == "idle":
                    break

    assert "interrupt_tts" in seen


def test_persona_greeting_is_spoken(settings) -> None:
    app = make_app(settings, [])
    persona = {
        "id": "luna",
        "displayName": "Luna",
        "voiceID": "voice-luna",
        "greeting": "Hi, I'm Luna!",
        "promptInjection": "You love the stars.",
    }

    with TestClient(app) as client:
        with client.websocket_connect("/api/voice/connect") as ws:
            ws.receive_json()
            ws.send_json({"type": "persona", "persona": persona})

            while True:
                message = ws.receive_json()
                if message["type"] == "audio_chunk":
                    break
            ws.send_json({"type": "playback_done", "chunk_id": message["chunk_id"]})

    assert base64.b64decode(message["data"]) == b"Hi, I'm Luna!"


def test_invalid_persona_reports_error(settings) -> None:
    app = make_app(settings, [])

    with TestClient(app) as client:
        with client.websocket_connect("/api/voice/connect") as ws:
            ws.receive_json()
            ws.send_json({"type": "persona", "persona": {"id": ""}})
            message = ws.receive_json()

    assert message["type"] == "error"


def test_cached_images_are_served(settings) -> None:
    app = make_app(settings, [])
    folder = uuid.uuid4().hex
    cache_dir = settings.image_cache_dir / folder
    cache_dir.mkdir(parents=True, exist_ok=True)
    name = f"{uuid.uuid4()}.png"
    (cache_dir / name).write_bytes(PNG_MAGIC + b"body")

    with TestClient(app) as client:
        ok = client.get(f"/api/voice/images/{folder}/{name}")
        missing = client.get(f"/api/voice/images/{folder}/{uuid.uuid4()}.png")
        other_folder = client.get(f"/api/voice/images/{uuid.uuid4().hex}/{name}")
        bad_name = client.get(f"/api/voice/images/{folder}/..%2Fsecret.png")
        bad_folder = client.get(f"/api/voice/images/..%2F..%2Fetc/{name}")

    assert ok.status_code == 200
    assert ok.headers["content-type"] == "image/png"
    assert ok.content.startswith(PNG_MAGIC)
    assert missing.status_code == 404
    assert other_folder.status_code == 404
    assert bad_name.status_code == 404
    assert bad_folder.status_code == 404


def test_disconnect_discards_session_image_cache(settings) -> None:
    app = make_app(settings, ["The fox runs. ", "It jumps!"])

    with TestClient(app) as client:
        with client.websocket_connect("/api/voice/connect?client_id=kid") as ws:
            ws.receive_json()
            coordinator = app.state.voice_manager.get_session("kid").coordinator
            ws.send_json({"type": "submit", "text": "Tell me a fox story"})
            received = drain_turn(ws)
            while not any(message["type"] == "image" for message in received):
                received.append(ws.receive_json())
            cache_dir = coordinator.image_queue.cache_dir
            image_url = next(m["url"] for m in received if m["type"] == "image")
            served = client.get(image_url)

    assert image_url.startswith(f"/api/voice/images/{cache_dir.name}/")
    assert served.status_code == 200
    assert not cache_dir.exists()


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("file:///tmp/cache/f00d/abc.png", "/api/voice/images/f00d/abc.png"),
        ("https://cdn.example.com/a.png", "https://cdn.example.com/a.png"),
    ],
)
def test_public_image_url(url: str, expected: str) -> None:
    assert public_image_url(url) == expected
