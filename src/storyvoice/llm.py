"""OpenAI-compatible chat client: token streaming and one-shot completions."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable, Mapping, Optional, Sequence

import httpx

from .config import Settings
from .errors import (
    EmptyResponse,
    NetworkError,
    PayloadValidationError,
    RequestTimeout,
    error_for_status,
)
from .schemas.conversation import ConversationMessage

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


class ChatClient:
    """Client responsible for streaming chat completions."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=20,
                    max_keepalive_connections=10,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @property
    def _base_url(self) -> str:
        """Return the API base URL without a trailing slash."""

        return str(self._settings.openai_base_url).rstrip("/")

    @staticmethod
    def _serialize(
        messages: Sequence[ConversationMessage] | Iterable[ConversationMessage],
    ) -> list[dict[str, str]]:
        return [message.to_payload() for message in messages]

    async def stream_chat(
        self,
        messages: Sequence[ConversationMessage],
        *,
        model: str | None = None,
    ) -> AsyncGenerator[str, None]:
        """Yield text deltas until the stream's end marker."""

        payload = {
            "model": model or self._settings.chat_model,
            "messages": self._serialize(messages),
            "stream": True,
        }
        async for event in self.stream_chat_raw(payload):
            if event.data == DONE_MARKER:
                return
            token = self._extract_delta_text(event.data)
            if token:
                yield token

    async def complete(
        self,
        messages: Sequence[ConversationMessage],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Return the assistant text of a non-streaming completion."""

        payload: dict[str, Any] = {
            "model": model or self._settings.chat_model,
            "messages": self._serialize(messages),
            "stream": False,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        headers = dict(self._headers)
        headers["Accept"] = "application/json"

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"{self._base_url}/chat/completions",
                headers=headers,
                json=payload,
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeout(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc)) from exc

        error = error_for_status(response.status_code, response.content)
        if error is not None:
            raise error

        try:
            body = response.json()
        except ValueError as exc:
            raise PayloadValidationError(str(exc)) from exc

        return self._extract_message_text(body)

    async def stream_chat_raw(
        self, payload: dict[str, Any]
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """Low-level streaming helper accepting a prebuilt payload."""

        url = f"{self._base_url}/chat/completions"

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=self._headers,
                json=payload,
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    error = error_for_status(response.status_code, body)
                    if error is not None:
                        logger.error("Chat stream rejected: %s", error)
                        raise error

                async for event in self._iter_events(response):
                    yield event
        except httpx.TimeoutException as exc:
            raise RequestTimeout(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc)) from exc

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Ignoring error while closing chat client", exc_info=True)

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field == "event":
                event_name = value or None
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _extract_delta_text(data: str) -> str:
        """Pull the content delta out of one chunk; malformed chunks yield ''."""

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream chunk: %s", data[:120])
            return ""
        if not isinstance(chunk, Mapping):
            return ""
        choices = chunk.get("choices")
        if not isinstance(choices, Sequence) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, Mapping):
            return ""
        delta = first.get("delta")
        if not isinstance(delta, Mapping):
            return ""
        content = delta.get("content")
        return content if isinstance(content, str) else ""

    @staticmethod
    def _extract_message_text(payload: Any) -> str:
        if not isinstance(payload, Mapping):
            raise PayloadValidationError("Completion response is not an object")
        choices = payload.get("choices")
        if not isinstance(choices, Sequence) or not choices:
            raise PayloadValidationError("Completion response missing choices")
        container = choices[0]
        message = container.get("message") if isinstance(container, Mapping) else None
        if not isinstance(message, Mapping):
            raise PayloadValidationError("Completion response missing message")
        content = message.get("content")
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise EmptyResponse("Completion response missing content")
        return text


__all__ = ["ChatClient", "DONE_MARKER", "ServerSentEvent"]
