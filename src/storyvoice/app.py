"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import PROJECT_ROOT, Settings, get_settings
from .dependencies import AppDependencies, build_dependencies
from .logging_settings import apply_logging_settings, parse_logging_settings
from .routers.voice import router as voice_router
from .services.voice_session import VoiceConnectionManager

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure logging based on LOG_LEVEL and the logging settings file."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    log_file = os.getenv("LOG_FILE")
    handlers: list[logging.Handler] = []

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    logging.getLogger("storyvoice").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Per-area overrides (terminal/timing/audio/images)
    if settings is not None:
        settings_path = settings.logging_settings_path
        if not settings_path.is_absolute():
            settings_path = PROJECT_ROOT / settings_path
        apply_logging_settings(parse_logging_settings(settings_path))


def create_app(dependencies: Optional[AppDependencies] = None) -> FastAPI:
    """Build the voice app; ``dependencies`` overrides the production wiring."""

    settings = dependencies.settings if dependencies is not None else get_settings()
    _configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        deps = dependencies or build_dependencies(settings)
        app.state.voice_dependencies = deps
        try:
            yield
        finally:
            # Add timeout to prevent hanging during shutdown (especially in tests)
            try:
                await asyncio.wait_for(deps.aclose(), timeout=10.0)
            except asyncio.TimeoutError:
                logging.warning("Dependency shutdown timed out after 10s")
            except Exception as exc:
                logging.warning("Error during dependency shutdown: %s", exc)

    app = FastAPI(
        title="Storyvoice Backend",
        version="0.1.0",
        description="Voice storytelling backend: streaming LLM, sentence TTS and illustrations.",
        lifespan=lifespan,
    )

    app.state.voice_manager = VoiceConnectionManager()
    if dependencies is not None:
        app.state.voice_dependencies = dependencies

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(voice_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | int]:
        return {
            "status": "ok",
            "chat_model": settings.chat_model,
            "connections": len(app.state.voice_manager.active_connections),
        }

    return app


__all__ = ["create_app"]
