"""WebSocket voice surface: one Session Coordinator per connected client."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import FileResponse
from pydantic import ValidationError

from ..dependencies import AppDependencies
from ..schemas.conversation import Persona
from ..services.conversation import SessionCoordinator
from ..services.voice_session import VoiceConnectionManager, VoiceSession, WebSocketAudioPlayer

router = APIRouter(prefix="/api/voice", tags=["Voice"])
logger = logging.getLogger(__name__)

_IMAGE_NAME = re.compile(r"^[0-9a-fA-F-]{36}\.png$")
_CACHE_FOLDER = re.compile(r"^[0-9a-f]{32}$")


def get_dependencies(request: Request) -> AppDependencies:
    deps = getattr(request.app.state, "voice_dependencies", None)
    if deps is None:
        raise HTTPException(status_code=500, detail="Voice services unavailable")
    return deps


def public_image_url(url: str) -> str:
    """Map a cached ``file://`` image to the route that serves it."""
    parsed = urlparse(url)
    if parsed.scheme != "file":
        return url
    path = Path(parsed.path)
    return f"{router.prefix}/images/{path.parent.name}/{path.name}"


def _outbound_event(event: dict[str, Any]) -> dict[str, Any]:
    if event.get("type") == "image":
        return {
            "type": "image",
            "sentence_index": event["sentence_index"],
            "url": public_image_url(event["url"]),
        }
    return event


async def handle_connection(
    websocket: WebSocket,
    client_id: str,
    manager: VoiceConnectionManager,
    deps: AppDependencies,
) -> None:
    """
    Main loop for a single client's WebSocket connection.

    Coordinator events and audio chunks go through one outbound queue drained
    by a sender task, so the receive loop stays free to read ``playback_done``
    acknowledgements while a turn is speaking.
    """
    await websocket.accept()

    outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def send(message: dict[str, Any]) -> None:
        await outbound.put(message)

    async def sender() -> None:
        while True:
            message = await outbound.get()
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.info(f"Stopped sending to {client_id}: {exc}")
                return

    player = WebSocketAudioPlayer(send)
    coordinator = SessionCoordinator(deps, player)
    session = VoiceSession(
        client_id=client_id,
        websocket=websocket,
        player=player,
        coordinator=coordinator,
    )
    manager.register(session)
    unsubscribe = coordinator.subscribe(lambda event: outbound.put_nowait(_outbound_event(event)))

    sender_task = asyncio.create_task(sender())
    background: set[asyncio.Task] = set()

    def track(task: asyncio.Task) -> None:
        background.add(task)
        task.add_done_callback(background.discard)

    def spawn(coro) -> None:
        track(asyncio.create_task(coro))

    await send({"type": "state", "state": coordinator.state.value})

    try:
        while True:
            data = await websocket.receive_json()
            session.update_activity()
            event_type = data.get("type") if isinstance(data, dict) else None

            if event_type == "heartbeat":
                pass

            elif event_type == "submit":
                text = str(data.get("text") or "").strip()
                if text:
                    track(coordinator.start_turn(text))
                else:
                    logger.debug(f"Ignoring empty submit from {client_id}")

            elif event_type == "stop":
                await coordinator.stop()

            elif event_type == "speak":
                text = str(data.get("text") or "").strip()
                if text:
                    spawn(coordinator.speak(text))

            elif event_type == "persona":
                raw = data.get("persona")
                try:
                    persona: Optional[Persona] = (
                        Persona.model_validate(raw) if raw is not None else None
                    )
                except ValidationError as exc:
                    logger.warning(f"Invalid persona from {client_id}: {exc}")
                    await send({"type": "error", "message": "That character could not be loaded."})
                    continue
                coordinator.set_persona(persona)
                if persona is not None and persona.greeting and data.get("greet", True):
                    spawn(coordinator.speak(persona.greeting))

            elif event_type == "playback_done":
                chunk_id = data.get("chunk_id")
                if isinstance(chunk_id, int):
                    player.ack(chunk_id)

            else:
                logger.warning(f"Unknown message type from {client_id}: {event_type}")

    except WebSocketDisconnect:
        logger.info(f"Client {client_id} disconnected")
    except Exception as exc:
        logger.error(f"Unexpected error for {client_id}: {exc}", exc_info=True)
    finally:
        unsubscribe()
        for task in list(background):
            task.cancel()
        await coordinator.shutdown()
        if background:
            await asyncio.wait(list(background))
        sender_task.cancel()
        await asyncio.wait([sender_task])
        manager.disconnect(client_id, session)


@router.websocket("/connect")
async def voice_connect(websocket: WebSocket):
    client_id = websocket.query_params.get("client_id") or str(uuid4())

    app_state = websocket.app.state
    deps: Optional[AppDependencies] = getattr(app_state, "voice_dependencies", None)
    manager: Optional[VoiceConnectionManager] = getattr(app_state, "voice_manager", None)
    if deps is None or manager is None:
        logger.error("Voice services not initialized")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Server not ready")
        return

    await handle_connection(websocket, client_id, manager, deps)


@router.get("/images/{folder}/{name}")
async def get_image(folder: str, name: str, request: Request) -> FileResponse:
    """Serve one cached story illustration from a session's cache folder."""
    if not _CACHE_FOLDER.match(folder) or not _IMAGE_NAME.match(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")

    deps = get_dependencies(request)
    path = Path(deps.settings.image_cache_dir) / folder / name
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return FileResponse(path, media_type="image/png")


__all__ = ["router", "public_image_url"]
