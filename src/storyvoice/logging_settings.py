"""Helpers for parsing the simple logging settings file."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

_LEVEL_MAP: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": None,
}

_DEFAULT_KEYS = ("terminal", "timing", "audio", "images")
_DEFAULT_LEVEL = "info"

# Logger names each area controls.
AREA_LOGGERS: dict[str, tuple[str, ...]] = {
    "timing": ("storyvoice.timing",),
    "audio": (
        "storyvoice.services.tts_service",
        "storyvoice.services.audio_sequencer",
    ),
    "images": (
        "storyvoice.services.image_queue",
        "storyvoice.services.image_gen_service",
        "storyvoice.services.illustration_prompt",
    ),
}


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None
    timing_level: int | None
    audio_level: int | None
    images_level: int | None


def _normalize_level(value: str) -> str:
    return value.strip().lower()


def _resolve_level(value: str) -> int | None:
    return _LEVEL_MAP.get(_normalize_level(value), _LEVEL_MAP[_DEFAULT_LEVEL])


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Parse the human-readable logging settings file."""

    levels: dict[str, int | None] = {
        key: _LEVEL_MAP[_DEFAULT_LEVEL] for key in _DEFAULT_KEYS
    }

    if path.exists():
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = (part.strip() for part in line.split("=", 1))
            normalized_key = key.lower()
            if normalized_key in _DEFAULT_KEYS:
                levels[normalized_key] = _resolve_level(value)

    return LoggingSettings(
        terminal_level=levels["terminal"],
        timing_level=levels["timing"],
        audio_level=levels["audio"],
        images_level=levels["images"],
    )


def apply_logging_settings(settings: LoggingSettings) -> None:
    """Push the parsed levels onto the ``storyvoice`` loggers.

    ``off`` disables an area entirely; the terminal level applies to the
    package logger and is inherited by every area left at its default.
    """

    package_logger = logging.getLogger("storyvoice")
    if settings.terminal_level is None:
        package_logger.disabled = True
    else:
        package_logger.disabled = False
        package_logger.setLevel(settings.terminal_level)

    area_levels = {
        "timing": settings.timing_level,
        "audio": settings.audio_level,
        "images": settings.images_level,
    }
    for area, level in area_levels.items():
        for name in AREA_LOGGERS[area]:
            area_logger = logging.getLogger(name)
            if level is None:
                area_logger.disabled = True
            else:
                area_logger.disabled = False
                area_logger.setLevel(level)


__all__ = [
    "AREA_LOGGERS",
    "LoggingSettings",
    "apply_logging_settings",
    "parse_logging_settings",
]
