"""Internal transport models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class Provider(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    requested_model: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    stream: bool = False
    top_p: float | None = None


class ModelRecord(BaseModel):
    id: str
    display_name: str = ""
    provider: Provider = Provider.OLLAMA
    internal_model_id: str
    endpoint_url: str | None = None
    api_key_ref: str | None = None
    is_default: bool = False
    is_active: bool = True
    created_at: int = 0


@dataclass(frozen=True, slots=True)
class ResolvedModel:
    internal_id: str
    provider: Provider
    endpoint_url: str | None = None
    api_key_ref: str | None = None


@dataclass(frozen=True, slots=True)
class StreamChunk:
    text: str
    is_final: bool = False
