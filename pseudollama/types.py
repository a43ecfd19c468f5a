from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BackendKind(str, Enum):
    CLOUD = "cloud"
    LOCAL = "local"

    @property
    def alternate(self) -> BackendKind:
        return BackendKind.LOCAL if self is BackendKind.CLOUD else BackendKind.CLOUD

    @classmethod
    def parse(cls, value: Any) -> BackendKind:
        if isinstance(value, BackendKind):
            return value
        normalized = str(value or "").strip().lower()
        aliased = _KIND_ALIASES.get(normalized, normalized)
        return cls(aliased)


_KIND_ALIASES = {
    "openrouter": "cloud",
    "lmstudio": "local",
}


class WireFormat(str, Enum):
    OLLAMA_CHAT = "ollama_chat"
    OLLAMA_GENERATE = "ollama_generate"
    OPENAI_CHAT = "openai_chat"
    OPENAI_COMPLETIONS = "openai_completions"

    @property
    def is_ollama(self) -> bool:
        return self in (WireFormat.OLLAMA_CHAT, WireFormat.OLLAMA_GENERATE)

    @property
    def is_generate_style(self) -> bool:
        return self in (WireFormat.OLLAMA_GENERATE, WireFormat.OPENAI_COMPLETIONS)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str | list[Any]

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class CanonicalChatRequest:
    model: str
    messages: tuple[ChatMessage, ...]
    stream: bool = False

    def message_dicts(self) -> list[dict[str, Any]]:
        return [message.to_dict() for message in self.messages]


@dataclass(slots=True)
class CanonicalChatResponse:
    model: str
    content: str
    role: str = "assistant"
    finish_reason: str = "stop"
    usage: dict[str, Any] | None = None
    # Raw OpenAI-shaped backend body, kept for pass-through rendering.
    native: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class StreamChunk:
    delta_text: str
    is_final: bool = False


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    kind: BackendKind
    endpoint_url: str | None
    api_key: str | None
    native_model_id: str
    timeout_seconds: float
    max_tokens: int | None = None

    @property
    def usable(self) -> bool:
        if not self.endpoint_url or not self.endpoint_url.strip():
            return False
        if self.kind is BackendKind.CLOUD:
            return bool(self.api_key and self.api_key.strip())
        return True

    @property
    def base_url(self) -> str:
        return (self.endpoint_url or "").strip().rstrip("/")


@dataclass(frozen=True, slots=True)
class RequestOrigin:
    referer: str | None = None


@dataclass(frozen=True, slots=True)
class Resolution:
    kind: BackendKind
    descriptor: BackendDescriptor
    upstream_model: str
    rule: str
    requested_model: str
    forced: bool = False
    trace: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.upstream_model}"
