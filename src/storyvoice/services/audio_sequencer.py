"""
Audio Sequencer for gapless, strictly ordered playback.

Architecture:
    enqueue_chunk() → pending deque → worker task → temp file → AudioPlayer.play()

One worker task owns the playback loop, so chunks play exactly in the order
they were enqueued no matter how many dispatchers enqueue concurrently. Each
chunk gets a future that resolves after the chunk has played and its temp
file is gone. Chunks discarded by ``stop()`` or ``reset()`` have their
futures cancelled and never run their ``on_complete`` callback.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from storyvoice.schemas.story import AudioChunk
from storyvoice.services.collaborators import AudioPlayer

logger = logging.getLogger(__name__)


@dataclass
class _QueuedChunk:
    chunk: AudioChunk
    future: "asyncio.Future[None]"
    on_complete: Optional[Callable[[], None]] = None


class AudioSequencer:
    """Queue audio chunks for sequential playback through an ``AudioPlayer``."""

    def __init__(
        self,
        player: AudioPlayer,
        *,
        temp_dir: Optional[Path] = None,
        suffix: str = ".mp3",
    ):
        self._player = player
        self._temp_dir = temp_dir
        self._suffix = suffix
        self._pending: deque[_QueuedChunk] = deque()
        self._current: Optional[_QueuedChunk] = None
        self._worker: Optional[asyncio.Task] = None
        self._next_ordinal = 0

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue_chunk(
        self,
        data: bytes,
        on_complete: Optional[Callable[[], None]] = None,
        *,
        session_id: Optional[uuid.UUID] = None,
    ) -> "asyncio.Future[None]":
        """Queue ``data`` behind anything already playing and return its future."""
        loop = asyncio.get_running_loop()
        item = _QueuedChunk(
            chunk=AudioChunk(data=data, ordinal=self._next_ordinal, session_id=session_id),
            future=loop.create_future(),
            on_complete=on_complete,
        )
        self._next_ordinal += 1
        self._pending.append(item)

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
        return item.future

    def reset(self) -> None:
        """Drop queued chunks; the chunk currently playing is left alone."""
        dropped = self._discard_pending()
        if dropped:
            logger.info(f"Audio queue reset, {dropped} chunk(s) dropped")

    async def stop(self) -> None:
        """Halt playback now, drop every queued chunk and release the player."""
        worker, self._worker = self._worker, None
        dropped = self._discard_pending()

        current = self._current
        if current is not None and not current.future.done():
            current.future.cancel()
        if worker is not None and not worker.done():
            worker.cancel()

        try:
            await self._player.halt()
        except Exception:
            logger.exception("Audio player failed to halt")

        if worker is not None:
            await asyncio.wait([worker])
        logger.info(f"Playback stopped, {dropped} queued chunk(s) discarded")

    async def wait_until_idle(self) -> None:
        """Return once nothing is queued or playing."""
        while self._worker is not None and not self._worker.done():
            await asyncio.wait([self._worker])

    def _discard_pending(self) -> int:
        dropped = 0
        while self._pending:
            item = self._pending.popleft()
            item.future.cancel()
            dropped += 1
        return dropped

    async def _run(self) -> None:
        while self._pending:
            item = self._pending.popleft()
            self._current = item
            try:
                await self._play(item)
            finally:
                self._current = None

    async def _play(self, item: _QueuedChunk) -> None:
        path: Optional[Path] = None
        try:
            path = self._persist(item.chunk.data)
            logger.debug(f"Playing chunk {item.chunk.ordinal} ({len(item.chunk.data)} bytes)")
            await self._player.play(path)
        except asyncio.CancelledError:
            item.future.cancel()
            raise
        except Exception:
            logger.exception(f"Playback failed for chunk {item.chunk.ordinal}")
            item.future.cancel()
            return
        finally:
            if path is not None:
                path.unlink(missing_ok=True)

        if item.future.done():
            return
        item.future.set_result(None)
        if item.on_complete is not None:
            try:
                item.on_complete()
            except Exception:
                logger.exception(f"Completion callback failed for chunk {item.chunk.ordinal}")

    def _persist(self, data: bytes) -> Path:
        if self._temp_dir is not None:
            self._temp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            suffix=self._suffix,
            dir=self._temp_dir,
            delete=False,
        ) as handle:
            handle.write(data)
        return Path(handle.name)


__all__ = ["AudioSequencer"]
