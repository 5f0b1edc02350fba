"""Runware image-generation client."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Optional, Protocol

import httpx

from storyvoice.config import Settings
from storyvoice.errors import (
    AuthError,
    NetworkError,
    PayloadValidationError,
    RequestTimeout,
    ServerError,
)
from storyvoice.prompts import IMAGE_STYLE_PREAMBLE

logger = logging.getLogger(__name__)


class ImageGenProvider(Protocol):
    async def generate_image(self, prompt: str) -> str:
        ...


class RunwareImageClient:
    """Submit one ``imageInference`` task and return the resulting image URL."""

    def __init__(self, settings: Settings, *, http_client: httpx.AsyncClient):
        self._settings = settings
        self._http_client = http_client

    def _build_payload(self, prompt: str) -> list[dict[str, Any]]:
        return [
            {
                "taskType": "imageInference",
                "taskUUID": str(uuid.uuid4()),
                "positivePrompt": f"{IMAGE_STYLE_PREAMBLE} {prompt}",
                "model": self._settings.runware_model,
                "steps": 4,
                "width": 512,
                "height": 512,
                "numberResults": 1,
                "outputType": "URL",
                "outputFormat": "PNG",
            }
        ]

    async def generate_image(self, prompt: str) -> str:
        api_key = (
            self._settings.runware_api_key.get_secret_value()
            if self._settings.runware_api_key else ""
        )
        if not api_key:
            raise AuthError("Runware API key missing")

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

        try:
            response = await self._http_client.post(
                str(self._settings.runware_endpoint_url),
                headers=headers,
                json=self._build_payload(prompt),
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeout(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc)) from exc

        if response.status_code != 200:
            message = self._extract_error_message(response.content) or "Runware response error"
            raise ServerError(response.status_code, message)

        image_url = self._extract_image_url(response.content)
        logger.info(f"Runware generated image: {image_url}")
        return image_url

    @staticmethod
    def _extract_image_url(raw: bytes) -> str:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PayloadValidationError("Malformed Runware response") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise PayloadValidationError("Malformed Runware response")
        image_url = data[0].get("imageURL")
        if not isinstance(image_url, str) or not image_url:
            raise PayloadValidationError("Malformed Runware response")
        return image_url

    @staticmethod
    def _extract_error_message(raw: bytes) -> Optional[str]:
        """Parse ``{"errors": [{"message": "..."}]}``."""
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        errors = payload.get("errors")
        if not isinstance(errors, list) or not errors or not isinstance(errors[0], dict):
            return None
        message = errors[0].get("message")
        return message if isinstance(message, str) else None


__all__ = ["ImageGenProvider", "RunwareImageClient"]
