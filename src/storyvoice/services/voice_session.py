"""WebSocket-side audio playback and connection bookkeeping."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket

if TYPE_CHECKING:
    from .conversation import SessionCoordinator

logger = logging.getLogger(__name__)

SendJson = Callable[[dict[str, Any]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebSocketAudioPlayer:
    """``AudioPlayer`` that plays through the browser.

    Each file is sent as a base64 ``audio_chunk`` message; ``play`` returns once
    the client reports ``playback_done`` for that chunk id. ``halt`` tells the
    client to drop its audio and releases every waiter.
    """

    def __init__(self, send: SendJson):
        self._send = send
        self._next_chunk_id = 0
        self._waiting: Dict[int, asyncio.Future] = {}

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    async def play(self, path: Path) -> None:
        data = await asyncio.to_thread(path.read_bytes)
        chunk_id = self._next_chunk_id
        self._next_chunk_id += 1

        done: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiting[chunk_id] = done
        try:
            await self._send(
                {
                    "type": "audio_chunk",
                    "chunk_id": chunk_id,
                    "data": base64.b64encode(data).decode("utf-8"),
                }
            )
            await done
        finally:
            self._waiting.pop(chunk_id, None)

    def ack(self, chunk_id: int) -> bool:
        """Resolve the waiter for ``chunk_id``; unknown ids are ignored."""
        done = self._waiting.get(chunk_id)
        if done is None or done.done():
            logger.debug(f"Ignoring playback_done for unknown chunk {chunk_id}")
            return False
        done.set_result(None)
        return True

    async def halt(self) -> None:
        for done in list(self._waiting.values()):
            if not done.done():
                done.cancel()
        self._waiting.clear()
        await self._send({"type": "interrupt_tts"})


@dataclass
class VoiceSession:
    """Tracks the state of a single voice client connection."""

    client_id: str
    websocket: WebSocket
    player: WebSocketAudioPlayer
    coordinator: Optional["SessionCoordinator"] = None
    started_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)

    def update_activity(self) -> None:
        self.last_activity = _utcnow()


class VoiceConnectionManager:
    """Manages active WebSocket connections and their sessions."""

    def __init__(self):
        self.active_connections: Dict[str, VoiceSession] = {}

    def register(self, session: VoiceSession) -> None:
        previous = self.active_connections.get(session.client_id)
        if previous is not None:
            logger.warning(f"Client {session.client_id} reconnected, replacing old session")
        self.active_connections[session.client_id] = session
        logger.info(f"Client connected: {session.client_id}")

    def disconnect(self, client_id: str, session: Optional[VoiceSession] = None) -> None:
        """Remove a client session (only if it is still the registered one)."""
        current = self.active_connections.get(client_id)
        if current is None:
            return
        if session is not None and current is not session:
            return
        del self.active_connections[client_id]
        logger.info(f"Client disconnected: {client_id}")

    def get_session(self, client_id: str) -> Optional[VoiceSession]:
        return self.active_connections.get(client_id)


__all__ = [
    "VoiceConnectionManager",
    "VoiceSession",
    "WebSocketAudioPlayer",
]
