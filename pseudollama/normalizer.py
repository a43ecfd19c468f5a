from __future__ import annotations

from typing import Any

from pseudollama.errors import ValidationError
from pseudollama.types import CanonicalChatRequest, ChatMessage, WireFormat


def normalize_request(payload: Any, wire_format: WireFormat) -> CanonicalChatRequest:
    """Validate an inbound body and convert it to a canonical chat request.

    Chat-style bodies carry ``messages``; generate-style bodies carry a
    ``prompt`` that becomes a single ``user`` message.
    """
    if not isinstance(payload, dict):
        raise ValidationError("body", "Expected a JSON object request body.")

    model = _require_model(payload)
    if wire_format.is_generate_style:
        messages = (ChatMessage(role="user", content=_require_prompt(payload)),)
    else:
        messages = _require_messages(payload)

    return CanonicalChatRequest(
        model=model,
        messages=messages,
        stream=payload.get("stream") is True,
    )


def _require_model(payload: dict[str, Any]) -> str:
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise ValidationError("model")
    return model.strip()


def _require_prompt(payload: dict[str, Any]) -> str:
    prompt = payload.get("prompt")
    if isinstance(prompt, list) and prompt and all(isinstance(item, str) for item in prompt):
        prompt = "\n".join(prompt)
    if not isinstance(prompt, str) or not prompt:
        raise ValidationError("prompt")
    return prompt


def _require_messages(payload: dict[str, Any]) -> tuple[ChatMessage, ...]:
    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise ValidationError(
            "messages", "Missing or invalid required field: messages"
        )

    messages: list[ChatMessage] = []
    for index, raw in enumerate(raw_messages):
        if not isinstance(raw, dict):
            raise ValidationError(
                "messages", f"Invalid message at index {index}: expected an object."
            )
        role = raw.get("role")
        if not isinstance(role, str) or not role.strip():
            raise ValidationError(
                "messages", f"Invalid message at index {index}: missing role."
            )
        content = raw.get("content")
        if content is None:
            content = ""
        if not isinstance(content, (str, list)):
            raise ValidationError(
                "messages",
                f"Invalid message at index {index}: content must be a string or a list.",
            )
        messages.append(ChatMessage(role=role.strip(), content=content))
    return tuple(messages)
