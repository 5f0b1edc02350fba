"""
Image Generation Queue: admission control, bounded concurrency, retries,
kid-safe fallback, PNG validation and a small on-disk cache.

Requests that exceed the story's image budget, arrive while the backlog is
full, or carry a degenerate prompt are dropped without any error; callers
never learn about the drop beyond a log line.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from collections import deque
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from storyvoice.errors import NetworkError, PayloadValidationError, RequestTimeout
from storyvoice.prompts import FALLBACK_IMAGE_PROMPT
from storyvoice.schemas.story import GeneratedImage, PendingImageRequest
from storyvoice.services.image_gen_service import ImageGenProvider
from storyvoice.timing import TimingLogger

logger = logging.getLogger(__name__)

PNG_MAGIC = b"\x89PNG"

ImageListener = Callable[[GeneratedImage], None]


class ImageGenerationQueue:
    """Queues, generates, validates and caches story illustrations."""

    def __init__(
        self,
        provider: ImageGenProvider,
        *,
        http_client: httpx.AsyncClient,
        cache_dir: Path,
        max_images: int = 10,
        max_pending: int = 4,
        max_concurrent: int = 2,
        min_prompt_chars: int = 30,
        attempts: int = 2,
        retry_delay: float = 0.5,
        cache_max_files: int = 10,
        fallback_prompt: str = FALLBACK_IMAGE_PROMPT,
        timing: Optional[TimingLogger] = None,
    ):
        self._provider = provider
        self._http = http_client
        self.cache_dir = cache_dir
        self.max_images = max_images
        self.max_pending = max_pending
        self.max_concurrent = max_concurrent
        self.min_prompt_chars = min_prompt_chars
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.cache_max_files = cache_max_files
        self.fallback_prompt = fallback_prompt
        self._timing = timing or TimingLogger()

        self._backlog: deque[PendingImageRequest] = deque()
        self._active = 0
        self._image_count = 0
        self._images: list[GeneratedImage] = []
        self._story_id = uuid.uuid4()
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[ImageListener] = []

    # Read-only views -------------------------------------------------

    @property
    def story_id(self) -> uuid.UUID:
        return self._story_id

    @property
    def images(self) -> tuple[GeneratedImage, ...]:
        return tuple(self._images)

    @property
    def pending_count(self) -> int:
        return len(self._backlog)

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def image_count(self) -> int:
        return self._image_count

    def image_for_sentence(self, sentence_index: int) -> Optional[GeneratedImage]:
        """Most recent image whose sentence index is at or before ``sentence_index``."""
        for image in reversed(self._images):
            if image.sentence_index <= sentence_index:
                return image
        return None

    def add_listener(self, listener: ImageListener) -> None:
        self._listeners.append(listener)

    # Mutations -------------------------------------------------------

    def reset_for_new_story(self, story_id: uuid.UUID) -> None:
        """Forget all work and bind future completions to ``story_id``."""
        self._story_id = story_id
        self._images = []
        self._image_count = 0
        self._backlog.clear()
        self._active = 0
        for task in list(self._tasks):
            task.cancel()
        logger.info(f"Image queue reset for story {story_id}")

    def enqueue(self, prompt: str, sentence_index: int) -> bool:
        """Admit a request if the limits allow it; returns whether it was queued."""
        if (
            self._image_count >= self.max_images
            or len(self._backlog) >= self.max_pending
            or len(prompt) <= self.min_prompt_chars
        ):
            logger.info("Enqueue skipped (limits hit or prompt too short)")
            return False

        self._backlog.append(PendingImageRequest(prompt=prompt, sentence_index=sentence_index))
        self._process()
        return True

    async def wait_until_idle(self) -> None:
        """Wait for every dispatched generation, including ones started meanwhile."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    def discard_cache(self) -> None:
        """Delete this queue's cache directory and everything in it."""
        shutil.rmtree(self.cache_dir, ignore_errors=True)
        logger.info(f"Discarded image cache {self.cache_dir}")

    # Engine ----------------------------------------------------------

    def _process(self) -> None:
        while self._active < self.max_concurrent and self._backlog:
            item = self._backlog.popleft()
            self._active += 1
            task = asyncio.create_task(self._generate(item, self._story_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _generate(self, item: PendingImageRequest, story_id: uuid.UUID) -> None:
        try:
            await self._generate_with_fallback(item, story_id)
        finally:
            if story_id == self._story_id:
                self._active = max(self._active - 1, 0)
                self._process()

    async def _generate_with_fallback(
        self, item: PendingImageRequest, story_id: uuid.UUID
    ) -> None:
        for attempt in range(1, self.attempts + 1):
            event = f"RunwareGen#{item.sentence_index}.{attempt}"
            self._timing.start(event)
            try:
                url = await self._generate_once(item.prompt)
            except Exception as exc:
                logger.error(f"Attempt {attempt} failed: {exc}")
                if attempt < self.attempts and self.retry_delay > 0:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue
            finally:
                self._timing.end(event)
            self._append(item, url, story_id)
            return

        self._timing.start("RunwareGenFallback")
        try:
            url = await self._generate_once(self.fallback_prompt)
        except Exception as exc:
            logger.error(f"Fallback failed: {exc}")
            return
        finally:
            self._timing.end("RunwareGenFallback")
        self._append(item, url, story_id)

    async def _generate_once(self, prompt: str) -> str:
        remote_url = await self._provider.generate_image(prompt)
        if not urlparse(remote_url).path.lower().endswith(".png"):
            raise PayloadValidationError(f"Not a PNG resource: {remote_url}")
        data = await self._fetch_png(remote_url)
        cached = self._cache_png(data)
        return cached.as_uri() if cached is not None else remote_url

    async def _fetch_png(self, url: str) -> bytes:
        try:
            response = await self._http.get(url)
        except httpx.TimeoutException as exc:
            raise RequestTimeout(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc)) from exc
        if response.status_code != 200:
            raise PayloadValidationError(f"Image fetch returned HTTP {response.status_code}")
        if not response.content.startswith(PNG_MAGIC):
            raise PayloadValidationError("Image payload is not a PNG")
        return response.content

    def _cache_png(self, data: bytes) -> Optional[Path]:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            files = sorted(
                self.cache_dir.glob("*.png"),
                key=lambda path: path.stat().st_mtime,
            )
            if len(files) >= self.cache_max_files:
                files[0].unlink(missing_ok=True)
            target = (self.cache_dir / f"{uuid.uuid4()}.png").resolve()
            target.write_bytes(data)
            return target
        except OSError as exc:
            logger.error(f"Cache write failed: {exc}")
            return None

    def _append(self, item: PendingImageRequest, url: str, story_id: uuid.UUID) -> None:
        if story_id != self._story_id:
            logger.info(f"Discarding image for superseded story {story_id}")
            return
        if self._image_count >= self.max_images:
            logger.info("Discarding image, story image limit reached")
            return

        image = GeneratedImage(sentence_index=item.sentence_index, url=url, story_id=story_id)
        self._images.append(image)
        self._image_count += 1
        for listener in list(self._listeners):
            try:
                listener(image)
            except Exception:
                logger.exception("Image listener failed")


__all__ = ["ImageGenerationQueue", "PNG_MAGIC"]
