import pathlib
import sys
from pathlib import Path
from typing import Any, Callable

import pytest
from pydantic import AnyHttpUrl, SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from storyvoice.config import Settings  # noqa: E402


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build isolated settings; the image cache lives under ``tmp_path``."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "openai_api_key": SecretStr("sk-test"),
            "openai_base_url": AnyHttpUrl("https://llm.example.com/v1"),
            "elevenlabs_api_key": SecretStr("el-test"),
            "elevenlabs_base_url": AnyHttpUrl("https://tts.example.com/v1/text-to-speech"),
            "runware_api_key": SecretStr("rw-test"),
            "runware_endpoint_url": AnyHttpUrl("https://images.example.com/v1/image/generate"),
            "image_cache_dir": tmp_path / "image_cache",
            "audio_temp_dir": tmp_path / "audio",
            "image_retry_delay": 0.0,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()
