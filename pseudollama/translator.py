from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol
from uuid import uuid4

from pseudollama.errors import ProxyError, TranslationError
from pseudollama.types import (
    BackendDescriptor,
    BackendKind,
    CanonicalChatRequest,
    CanonicalChatResponse,
    Resolution,
    StreamChunk,
    WireFormat,
)

OWNED_BY = "pseudollama"
NDJSON_MEDIA_TYPE = "application/x-ndjson"
EVENT_STREAM_MEDIA_TYPE = "text/event-stream"

_VENDOR_MODEL_ID = re.compile(r"^[A-Za-z0-9][\w.\-]*/[\w.\-:]+$")


def iso_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# Backend axis


class BackendCodec:
    """Canonical <-> native conversion for an OpenAI-shaped backend."""

    kind: BackendKind
    openai_shaped = True
    chat_path = "/chat/completions"
    models_path = "/models"
    end_of_stream_marker = "[DONE]"

    def headers(self, descriptor: BackendDescriptor) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if descriptor.api_key:
            headers["Authorization"] = f"Bearer {descriptor.api_key}"
        return headers

    def build_request(
        self, request: CanonicalChatRequest, resolution: Resolution
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": resolution.upstream_model,
            "messages": request.message_dicts(),
            "stream": request.stream,
        }
        if resolution.descriptor.max_tokens:
            payload["max_tokens"] = resolution.descriptor.max_tokens
        return payload

    def accepts_model_id(self, model: str) -> bool:
        return False

    def error_message(self, body: Any) -> str | None:
        if not isinstance(body, dict):
            return None
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()
            return json.dumps(error, separators=(",", ":"))
        if isinstance(error, str) and error.strip():
            return error.strip()
        return None

    def parse_response(
        self,
        body: Any,
        *,
        requested_model: str,
        status_code: int | None = None,
    ) -> CanonicalChatResponse:
        error_message = self.error_message(body)
        if error_message is not None:
            raise TranslationError(self.kind, error_message, status_code=status_code)
        if not isinstance(body, dict):
            raise TranslationError(
                self.kind, "expected a JSON object", status_code=status_code
            )
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise TranslationError(
                self.kind, "missing 'choices'", status_code=status_code
            )
        first = choices[0]
        message = first.get("message")
        if not isinstance(message, dict):
            raise TranslationError(
                self.kind, "missing 'choices[0].message'", status_code=status_code
            )
        content = message.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise TranslationError(
                self.kind,
                "'choices[0].message.content' is not a string",
                status_code=status_code,
            )
        role = message.get("role")
        finish_reason = first.get("finish_reason")
        usage = body.get("usage")
        return CanonicalChatResponse(
            model=requested_model,
            content=content,
            role=role if isinstance(role, str) and role else "assistant",
            finish_reason=finish_reason if isinstance(finish_reason, str) else "stop",
            usage=usage if isinstance(usage, dict) else None,
            native=body if self.openai_shaped else None,
        )

    def is_end_of_stream(self, data: str) -> bool:
        return data == self.end_of_stream_marker

    def parse_stream_data(self, data: str) -> StreamChunk | None:
        try:
            parsed = json.loads(data)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        error_message = self.error_message(parsed)
        if error_message is not None:
            raise TranslationError(self.kind, error_message)
        choices = parsed.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        if not isinstance(content, str) or not content:
            return None
        return StreamChunk(delta_text=content)


class CloudCodec(BackendCodec):
    kind = BackendKind.CLOUD

    def headers(self, descriptor: BackendDescriptor) -> dict[str, str]:
        headers = super().headers(descriptor)
        headers["X-Title"] = "PseudoLlama"
        return headers

    def accepts_model_id(self, model: str) -> bool:
        return bool(_VENDOR_MODEL_ID.match(model.strip()))


class LocalCodec(BackendCodec):
    kind = BackendKind.LOCAL


_CODECS: dict[BackendKind, BackendCodec] = {
    BackendKind.CLOUD: CloudCodec(),
    BackendKind.LOCAL: LocalCodec(),
}


def codec_for(kind: BackendKind) -> BackendCodec:
    return _CODECS[kind]


# Caller axis: non-streaming responses


def render_ollama_chat(response: CanonicalChatResponse) -> dict[str, Any]:
    return {
        "model": response.model,
        "created_at": iso_timestamp(),
        "message": {"role": response.role, "content": response.content},
        "done": True,
    }


def render_ollama_generate(response: CanonicalChatResponse) -> dict[str, Any]:
    return {
        "model": response.model,
        "created_at": iso_timestamp(),
        "response": response.content,
        "done": True,
    }


def _usage_or_zero(response: CanonicalChatResponse) -> dict[str, Any]:
    return response.usage or {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
    }


def render_openai_chat(response: CanonicalChatResponse) -> dict[str, Any]:
    if response.native is not None:
        return response.native
    return {
        "id": f"chatcmpl-{uuid4().hex[:24]}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": response.model,
        "choices": [
            {
                "index": 0,
                "message": {"role": response.role, "content": response.content},
                "finish_reason": response.finish_reason,
            }
        ],
        "usage": _usage_or_zero(response),
    }


def render_openai_completion(response: CanonicalChatResponse) -> dict[str, Any]:
    native = response.native or {}
    created = native.get("created")
    return {
        "id": f"cmpl-{uuid4().hex[:24]}",
        "object": "text_completion",
        "created": created if isinstance(created, int) else int(time.time()),
        "model": response.model,
        "choices": [
            {
                "text": response.content,
                "index": 0,
                "logprobs": None,
                "finish_reason": response.finish_reason,
            }
        ],
        "usage": _usage_or_zero(response),
    }


RESPONSE_RENDERERS: dict[WireFormat, Callable[[CanonicalChatResponse], dict[str, Any]]] = {
    WireFormat.OLLAMA_CHAT: render_ollama_chat,
    WireFormat.OLLAMA_GENERATE: render_ollama_generate,
    WireFormat.OPENAI_CHAT: render_openai_chat,
    WireFormat.OPENAI_COMPLETIONS: render_openai_completion,
}


def render_response(
    wire_format: WireFormat, response: CanonicalChatResponse
) -> dict[str, Any]:
    return RESPONSE_RENDERERS[wire_format](response)


# Caller axis: errors


def openai_error_body(message: str, error_type: str, code: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}


def render_error(
    wire_format: WireFormat, exc: ProxyError, model: str | None
) -> tuple[int, dict[str, Any]]:
    """Returns ``(http_status, body)`` for ``exc`` in the caller's format.

    Ollama callers always get HTTP 200 with the error text as the answer.
    """
    if wire_format.is_ollama:
        failed = CanonicalChatResponse(
            model=model or "unknown", content=f"Error: {exc.message}"
        )
        return 200, render_response(wire_format, failed)
    return exc.http_status, openai_error_body(exc.message, exc.error_type, exc.code)


# Caller axis: streaming frames


class FrameEncoder(Protocol):
    media_type: str

    def encode(self, chunk: StreamChunk) -> bytes: ...

    def encode_error(self, message: str) -> bytes: ...


def _ndjson(payload: dict[str, Any]) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def _sse(payload: dict[str, Any] | str) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(
        payload, ensure_ascii=False, separators=(",", ":")
    )
    return f"data: {data}\n\n".encode("utf-8")


class OllamaChatFrames:
    media_type = NDJSON_MEDIA_TYPE

    def __init__(self, model: str) -> None:
        self.model = model

    def encode(self, chunk: StreamChunk) -> bytes:
        return _ndjson(
            {
                "model": self.model,
                "created_at": iso_timestamp(),
                "message": {"role": "assistant", "content": chunk.delta_text},
                "done": chunk.is_final,
            }
        )

    def encode_error(self, message: str) -> bytes:
        return self.encode(StreamChunk(delta_text=f"Error: {message}"))


class OllamaGenerateFrames:
    media_type = NDJSON_MEDIA_TYPE

    def __init__(self, model: str) -> None:
        self.model = model

    def encode(self, chunk: StreamChunk) -> bytes:
        return _ndjson(
            {
                "model": self.model,
                "created_at": iso_timestamp(),
                "response": chunk.delta_text,
                "done": chunk.is_final,
            }
        )

    def encode_error(self, message: str) -> bytes:
        return self.encode(StreamChunk(delta_text=f"Error: {message}"))


class OpenAIChatFrames:
    media_type = EVENT_STREAM_MEDIA_TYPE

    def __init__(self, model: str) -> None:
        self.model = model
        self.completion_id = f"chatcmpl-{uuid4().hex[:24]}"
        self.created = int(time.time())
        self._sent_role = False

    def encode(self, chunk: StreamChunk) -> bytes:
        if chunk.is_final:
            return _sse("[DONE]")
        delta: dict[str, Any] = {"content": chunk.delta_text}
        if not self._sent_role:
            delta = {"role": "assistant", **delta}
            self._sent_role = True
        return _sse(
            {
                "id": self.completion_id,
                "object": "chat.completion.chunk",
                "created": self.created,
                "model": self.model,
                "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
            }
        )

    def encode_error(self, message: str) -> bytes:
        return _sse(openai_error_body(message, "upstream_error", "stream_interrupted"))


class OpenAICompletionFrames:
    media_type = EVENT_STREAM_MEDIA_TYPE

    def __init__(self, model: str) -> None:
        self.model = model
        self.completion_id = f"cmpl-{uuid4().hex[:24]}"
        self.created = int(time.time())

    def encode(self, chunk: StreamChunk) -> bytes:
        if chunk.is_final:
            return _sse("[DONE]")
        return _sse(
            {
                "id": self.completion_id,
                "object": "text_completion_chunk",
                "created": self.created,
                "model": self.model,
                "choices": [
                    {
                        "text": chunk.delta_text,
                        "index": 0,
                        "logprobs": None,
                        "finish_reason": None,
                    }
                ],
            }
        )

    def encode_error(self, message: str) -> bytes:
        return _sse(openai_error_body(message, "upstream_error", "stream_interrupted"))


FRAME_ENCODERS: dict[WireFormat, Callable[[str], FrameEncoder]] = {
    WireFormat.OLLAMA_CHAT: OllamaChatFrames,
    WireFormat.OLLAMA_GENERATE: OllamaGenerateFrames,
    WireFormat.OPENAI_CHAT: OpenAIChatFrames,
    WireFormat.OPENAI_COMPLETIONS: OpenAICompletionFrames,
}

ChunkTransform = Callable[[StreamChunk], "StreamChunk | None"]


def drop_empty_deltas(chunk: StreamChunk) -> StreamChunk | None:
    if not chunk.is_final and not chunk.delta_text:
        return None
    return chunk


@dataclass(slots=True)
class StreamPipeline:
    transforms: tuple[ChunkTransform, ...]
    encoder: FrameEncoder

    @property
    def media_type(self) -> str:
        return self.encoder.media_type

    def render(self, chunk: StreamChunk) -> bytes | None:
        current: StreamChunk | None = chunk
        for transform in self.transforms:
            if current is None:
                return None
            current = transform(current)
        if current is None:
            return None
        return self.encoder.encode(current)

    def render_error(self, message: str) -> bytes:
        return self.encoder.encode_error(message)


def build_stream_pipeline(wire_format: WireFormat, model: str) -> StreamPipeline:
    return StreamPipeline(
        transforms=(drop_empty_deltas,),
        encoder=FRAME_ENCODERS[wire_format](model),
    )
