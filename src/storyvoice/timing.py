"""Toggleable latency spans for the voice pipeline."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger("storyvoice.timing")


class TimingLogger:
    """Records start/end pairs by event name and logs the elapsed time.

    Disabled instances are no-ops so call sites never need to check the flag.
    """

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._started: dict[str, float] = {}

    def start(self, event: str) -> None:
        if not self.enabled:
            return
        self._started[event] = time.monotonic()
        logger.info("[TIMING] Started: %s", event)

    def end(self, event: str) -> float | None:
        if not self.enabled:
            return None
        started = self._started.pop(event, None)
        if started is None:
            return None
        elapsed = time.monotonic() - started
        logger.info("[TIMING] Ended: %s, duration: %.0fms", event, elapsed * 1000)
        return elapsed

    @contextmanager
    def span(self, event: str) -> Iterator[None]:
        self.start(event)
        try:
            yield
        finally:
            self.end(event)


__all__ = ["TimingLogger"]
