import logging
from collections import OrderedDict
from typing import Optional

import httpx

from storyvoice.config import Settings
from storyvoice.errors import (
    AuthError,
    EmptyResponse,
    NetworkError,
    RateLimited,
    RequestTimeout,
    error_for_status,
)

logger = logging.getLogger(__name__)


class AudioCache:
    """Bounded LRU cache for whole-utterance audio."""

    def __init__(self, maxsize: int = 64):
        self.maxsize = maxsize
        self._entries: "OrderedDict[tuple[str, str], bytes]" = OrderedDict()

    def get(self, key: tuple[str, str]) -> Optional[bytes]:
        data = self._entries.get(key)
        if data is not None:
            self._entries.move_to_end(key)
        return data

    def put(self, key: tuple[str, str], data: bytes) -> None:
        self._entries[key] = data
        self._entries.move_to_end(key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


class TTSGateway:
    """
    Text-to-speech with a primary and a fallback provider.

    Primary: ElevenLabs. Fallback: OpenAI speech with a fixed voice, used once
    and only when the primary rejects the credential (401) or is rate limited
    (429). Other failures propagate to the caller.

    Non-streaming results are cached by exact text and voice so replayed
    utterances such as greetings skip the network. Streaming requests are
    unique per sentence and bypass the cache.
    """

    # Singleton HTTP client for connection pooling
    _http_client: Optional[httpx.AsyncClient] = None

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._client_override = http_client
        self._cache = AudioCache(settings.tts_cache_size)

        self.elevenlabs_api_key = (
            settings.elevenlabs_api_key.get_secret_value()
            if settings.elevenlabs_api_key else None
        )
        self.elevenlabs_base_url = str(settings.elevenlabs_base_url).rstrip("/")
        self.default_voice_id = settings.elevenlabs_voice_id

        self.openai_api_key = settings.openai_api_key.get_secret_value()
        self.openai_speech_url = f"{str(settings.openai_base_url).rstrip('/')}/audio/speech"

        if not self.elevenlabs_api_key:
            logger.warning("No ElevenLabs API key configured; every request will use the fallback voice.")

    @classmethod
    def get_http_client(cls) -> httpx.AsyncClient:
        """Get singleton HTTP client for connection pooling."""
        if cls._http_client is None:
            cls._http_client = httpx.AsyncClient(timeout=30.0)
            logger.info("Created singleton httpx.AsyncClient for TTS")
        return cls._http_client

    @classmethod
    async def close_http_client(cls) -> None:
        """Close the singleton HTTP client. Call on app shutdown."""
        if cls._http_client is not None:
            await cls._http_client.aclose()
            cls._http_client = None
            logger.info("Closed TTS HTTP client")

    @property
    def _client(self) -> httpx.AsyncClient:
        return self._client_override or self.get_http_client()

    @property
    def cache(self) -> AudioCache:
        return self._cache

    async def synthesize(
        self,
        text: str,
        voice_id: Optional[str] = None,
        streaming: bool = False,
    ) -> bytes:
        """
        Synthesize ``text`` and return the encoded audio bytes.

        Raises:
            AuthError, RateLimited: only if the fallback provider also refuses
            EmptyResponse: a provider returned no audio
            ServerError: any other non-200 answer (no fallback)
            NetworkError, RequestTimeout: transport failures
        """
        voice = voice_id or self.default_voice_id
        cache_key = (voice, text)

        if not streaming:
            hit = self._cache.get(cache_key)
            if hit is not None:
                logger.debug(f"TTS cache hit for: {text[:50]}")
                return hit

        try:
            audio = await self._synthesize_elevenlabs(text, voice, stream=streaming)
        except (AuthError, RateLimited) as exc:
            logger.warning(f"ElevenLabs refused request ({exc}); falling back to OpenAI")
            speed = self._settings.fallback_tts_streaming_speed if streaming else None
            audio = await self._synthesize_openai(text, stream=streaming, speed=speed)

        if not streaming:
            self._cache.put(cache_key, audio)
        return audio

    async def _synthesize_elevenlabs(self, text: str, voice_id: str, *, stream: bool) -> bytes:
        """Synthesize using ElevenLabs."""
        if not self.elevenlabs_api_key:
            raise AuthError("ElevenLabs API key not configured")

        url = f"{self.elevenlabs_base_url}/{voice_id}" + ("/stream" if stream else "")
        headers = {
            "xi-api-key": self.elevenlabs_api_key,
            "Content-Type": "application/json",
        }
        if stream:
            headers["Accept"] = "audio/mpeg"

        payload = {
            "text": text,
            "model_id": self._settings.elevenlabs_model,
            "voice_settings": {
                "stability": 0.6,
                "similarity_boost": 0.85,
            },
            "output_format": "mp3_44100_128",
        }

        audio = await self._request_audio(url, headers, payload, stream=stream)
        logger.info(f"ElevenLabs TTS synthesized {len(audio)} bytes for text: {text[:50]}...")
        return audio

    async def _synthesize_openai(
        self,
        text: str,
        *,
        stream: bool,
        speed: Optional[float],
    ) -> bytes:
        """Synthesize using OpenAI TTS with the fixed fallback voice."""
        headers = {
            "Authorization": f"Bearer {self.openai_api_key}",
            "Content-Type": "application/json",
        }

        payload: dict = {
            "model": self._settings.openai_tts_model,
            "input": text,
            "voice": self._settings.fallback_tts_voice,
            "response_format": "mp3",
        }
        if speed is not None:
            payload["speed"] = speed
        if stream:
            payload["stream"] = True

        audio = await self._request_audio(self.openai_speech_url, headers, payload, stream=stream)
        logger.info(f"OpenAI TTS synthesized {len(audio)} bytes for text: {text[:50]}...")
        return audio

    async def _request_audio(
        self,
        url: str,
        headers: dict[str, str],
        payload: dict,
        *,
        stream: bool,
    ) -> bytes:
        try:
            if stream:
                async with self._client.stream(
                    "POST",
                    url,
                    headers=headers,
                    json=payload,
                    timeout=30.0,
                ) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        self._raise_for_status(response.status_code, body)
                    buffer = bytearray()
                    async for chunk in response.aiter_bytes():
                        if chunk:
                            buffer.extend(chunk)
                    audio = bytes(buffer)
            else:
                response = await self._client.post(
                    url,
                    headers=headers,
                    json=payload,
                    timeout=30.0,
                )
                self._raise_for_status(response.status_code, response.content)
                audio = response.content
        except httpx.TimeoutException as exc:
            raise RequestTimeout(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc)) from exc

        if not audio:
            raise EmptyResponse(f"Empty audio payload from {url}")
        return audio

    @staticmethod
    def _raise_for_status(status_code: int, body: bytes) -> None:
        error = error_for_status(status_code, body)
        if error is not None:
            raise error


__all__ = ["AudioCache", "TTSGateway"]
