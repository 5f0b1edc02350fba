"""Error taxonomy shared by the provider clients and the session coordinator."""

from __future__ import annotations

from fastapi import status


class VoiceError(Exception):
    """Base class for recoverable failures in the voice pipeline.

    ``user_message`` is the human-readable text surfaced to the UI layer; no
    structured error codes cross that boundary.
    """

    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.user_message)
        self.detail = detail


class AuthError(VoiceError):
    """Credential rejected by a provider (HTTP 401)."""

    user_message = "The voice service could not sign in. Please try again later."


# Name used by the TTS providers for the same condition.
Unauthorized = AuthError


class RateLimited(VoiceError):
    """Provider quota or rate limit hit (HTTP 429)."""

    user_message = "The service is busy right now. Please try again in a moment."


class EmptyResponse(VoiceError):
    """Provider answered successfully but returned no payload."""

    user_message = "The service returned nothing. Please try again."


class ServerError(VoiceError):
    """Any other non-200 provider response."""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code}: {body}" if body else f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"AI response error (HTTP {self.status_code}). Please try again."


class NetworkError(VoiceError):
    """Transport-level failure talking to a provider."""

    user_message = "Network issue. Please check your connection and try again."


class RequestTimeout(VoiceError):
    """A provider call did not finish in time."""

    user_message = "Operation timed out. Please try again."


class PayloadValidationError(VoiceError):
    """Malformed or unsafe provider payload."""

    user_message = "The service sent something unexpected. Please try again."


class SpeechToTextError(VoiceError):
    """The speech-to-text collaborator failed or heard nothing."""

    user_message = "I couldn't hear that. Try speaking a little louder."


def error_for_status(status_code: int, body: bytes | str = b"") -> VoiceError | None:
    """Map an HTTP status to the matching error, or ``None`` for 200."""

    if status_code == status.HTTP_200_OK:
        return None
    if status_code == status.HTTP_401_UNAUTHORIZED:
        return AuthError(f"HTTP {status_code}")
    if status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return RateLimited(f"HTTP {status_code}")
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="ignore")
    return ServerError(status_code, body)


__all__ = [
    "AuthError",
    "EmptyResponse",
    "NetworkError",
    "PayloadValidationError",
    "RateLimited",
    "RequestTimeout",
    "ServerError",
    "SpeechToTextError",
    "Unauthorized",
    "VoiceError",
    "error_for_status",
]
