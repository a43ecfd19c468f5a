from __future__ import annotations

import pytest

from pseudollama.errors import ValidationError
from pseudollama.normalizer import normalize_request
from pseudollama.types import ChatMessage, WireFormat


def test_chat_body_becomes_canonical_request() -> None:
    request = normalize_request(
        {
            "model": " lmstudio ",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "hi"},
            ],
            "stream": True,
        },
        WireFormat.OLLAMA_CHAT,
    )

    assert request.model == "lmstudio"
    assert request.stream is True
    assert request.messages == (
        ChatMessage(role="system", content="be brief"),
        ChatMessage(role="user", content="hi"),
    )


@pytest.mark.parametrize("stream", [None, "true", 1, False])
def test_stream_is_only_true_for_json_true(stream: object) -> None:
    body: dict[str, object] = {"model": "m", "messages": [{"role": "user", "content": "x"}]}
    if stream is not None:
        body["stream"] = stream
    assert normalize_request(body, WireFormat.OPENAI_CHAT).stream is False


def test_generate_prompt_becomes_single_user_message() -> None:
    request = normalize_request(
        {"model": "remote", "prompt": "tell me a joke"}, WireFormat.OLLAMA_GENERATE
    )
    assert request.messages == (ChatMessage(role="user", content="tell me a joke"),)


def test_completion_prompt_list_is_joined_with_newlines() -> None:
    request = normalize_request(
        {"model": "m", "prompt": ["line one", "line two"]},
        WireFormat.OPENAI_COMPLETIONS,
    )
    assert request.messages[0].content == "line one\nline two"


def test_missing_model_names_the_field() -> None:
    with pytest.raises(ValidationError) as exc_info:
        normalize_request({"messages": [{"role": "user", "content": "x"}]}, WireFormat.OLLAMA_CHAT)
    assert exc_info.value.field == "model"
    assert exc_info.value.message == "Missing required field: model"


def test_missing_prompt_names_the_field() -> None:
    with pytest.raises(ValidationError) as exc_info:
        normalize_request({"model": "m"}, WireFormat.OLLAMA_GENERATE)
    assert exc_info.value.message == "Missing required field: prompt"


@pytest.mark.parametrize(
    "messages",
    [None, [], "hello", [{"content": "no role"}], ["not-an-object"]],
)
def test_invalid_messages_are_rejected(messages: object) -> None:
    with pytest.raises(ValidationError) as exc_info:
        normalize_request({"model": "m", "messages": messages}, WireFormat.OPENAI_CHAT)
    assert exc_info.value.field == "messages"


def test_null_content_is_kept_as_empty_text() -> None:
    request = normalize_request(
        {"model": "m", "messages": [{"role": "assistant", "content": None}]},
        WireFormat.OPENAI_CHAT,
    )
    assert request.messages[0].content == ""


def test_non_object_body_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        normalize_request(None, WireFormat.OLLAMA_CHAT)
    assert exc_info.value.field == "body"
