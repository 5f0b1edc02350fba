"""Pydantic models for conversation context and personas."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationMessage(BaseModel):
    """A single entry of the LLM request context."""

    role: Literal["system", "user", "assistant"]
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class Persona(BaseModel):
    """The slice of a character manifest entry the conversation core needs."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1, alias="displayName")
    voice_id: Optional[str] = Field(default=None, alias="voiceID")
    greeting: str = ""
    prompt_injection: str = Field(default="", alias="promptInjection")


__all__ = ["ConversationMessage", "Persona"]
