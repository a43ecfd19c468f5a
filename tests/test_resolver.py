from __future__ import annotations

import pytest

from pseudollama.config import (
    DEFAULT_CLOUD_MODEL,
    DEFAULT_LOCAL_MODEL,
    CloudBackendConfig,
    LocalBackendConfig,
    ProxyConfig,
)
from pseudollama.errors import BackendUnconfigured
from pseudollama.resolver import BackendResolver, strip_latest_suffix
from pseudollama.types import (
    BackendKind,
    CanonicalChatRequest,
    ChatMessage,
    RequestOrigin,
)


def _request(model: str) -> CanonicalChatRequest:
    return CanonicalChatRequest(
        model=model, messages=(ChatMessage(role="user", content="hi"),)
    )


def _config(
    *,
    selected: BackendKind = BackendKind.LOCAL,
    cloud_key: str | None = "sk-test",
    local_url: str | None = "http://localhost:1234/v1",
) -> ProxyConfig:
    return ProxyConfig(
        selected_backend=selected,
        cloud=CloudBackendConfig(api_key=cloud_key),
        local=LocalBackendConfig(endpoint_url=local_url),
    )


def test_cloud_latest_with_only_cloud_configured_uses_default_model() -> None:
    resolver = BackendResolver()
    resolution = resolver.resolve(
        _request("cloud:latest"),
        None,
        _config(selected=BackendKind.CLOUD, local_url=None),
    )

    assert resolution.kind is BackendKind.CLOUD
    assert resolution.upstream_model == DEFAULT_CLOUD_MODEL
    assert resolution.rule == "reserved_name"


@pytest.mark.parametrize(
    ("model", "kind", "upstream"),
    [
        ("cloud:anthropic/claude-3-haiku", BackendKind.CLOUD, "anthropic/claude-3-haiku"),
        ("openrouter:meta/llama-3", BackendKind.CLOUD, "meta/llama-3"),
        ("local:qwen2.5-7b-instruct", BackendKind.LOCAL, "qwen2.5-7b-instruct"),
        ("lmstudio:phi-3", BackendKind.LOCAL, "phi-3"),
    ],
)
def test_explicit_tag_passes_name_through(
    model: str, kind: BackendKind, upstream: str
) -> None:
    resolution = BackendResolver().resolve(_request(model), None, _config())
    assert resolution.rule == "explicit_tag"
    assert resolution.kind is kind
    assert resolution.upstream_model == upstream


def test_vendor_prefix_routes_to_cloud_verbatim() -> None:
    resolution = BackendResolver().resolve(
        _request("openrouter/auto"), None, _config()
    )
    assert resolution.rule == "vendor_prefix"
    assert resolution.kind is BackendKind.CLOUD
    assert resolution.upstream_model == "openrouter/auto"


@pytest.mark.parametrize(
    ("model", "kind", "upstream"),
    [
        ("OpenRouter API", BackendKind.CLOUD, DEFAULT_CLOUD_MODEL),
        ("openrouter-latest", BackendKind.CLOUD, DEFAULT_CLOUD_MODEL),
        ("Remote Pseudo Model", BackendKind.CLOUD, DEFAULT_CLOUD_MODEL),
        ("lmstudio:latest", BackendKind.LOCAL, DEFAULT_LOCAL_MODEL),
        ("LM Studio", BackendKind.LOCAL, DEFAULT_LOCAL_MODEL),
        ("local", BackendKind.LOCAL, DEFAULT_LOCAL_MODEL),
    ],
)
def test_reserved_names_use_backend_default(
    model: str, kind: BackendKind, upstream: str
) -> None:
    resolution = BackendResolver().resolve(
        _request(model), None, _config(selected=kind.alternate)
    )
    assert resolution.rule == "reserved_name"
    assert resolution.kind is kind
    assert resolution.upstream_model == upstream


def test_remote_goes_to_cloud_for_external_callers() -> None:
    resolver = BackendResolver(web_ui_hosts=["localhost:12345"])
    resolution = resolver.resolve(
        _request("remote:latest"),
        RequestOrigin(referer="http://other-tool.example/chat"),
        _config(selected=BackendKind.LOCAL),
    )
    assert resolution.rule == "remote_pseudo"
    assert resolution.kind is BackendKind.CLOUD
    assert resolution.upstream_model == DEFAULT_CLOUD_MODEL


def test_remote_from_web_ui_falls_through_to_configured_default() -> None:
    resolver = BackendResolver(web_ui_hosts=["localhost:12345"])
    resolution = resolver.resolve(
        _request("remote"),
        RequestOrigin(referer="http://localhost:12345/index.html"),
        _config(selected=BackendKind.LOCAL),
    )
    assert resolution.rule == "configured_default"
    assert resolution.kind is BackendKind.LOCAL
    assert resolution.trace["from_web_ui"] is True


def test_configured_default_keeps_plausible_cloud_model_id() -> None:
    resolution = BackendResolver().resolve(
        _request("mistralai/mistral-7b-instruct"),
        None,
        _config(selected=BackendKind.CLOUD),
    )
    assert resolution.rule == "configured_default"
    assert resolution.upstream_model == "mistralai/mistral-7b-instruct"


def test_configured_default_replaces_unknown_model_on_local() -> None:
    resolution = BackendResolver().resolve(
        _request("llama3"), None, _config(selected=BackendKind.LOCAL)
    )
    assert resolution.kind is BackendKind.LOCAL
    assert resolution.upstream_model == DEFAULT_LOCAL_MODEL


def test_configured_default_moves_to_usable_alternate() -> None:
    resolution = BackendResolver().resolve(
        _request("llama3"),
        None,
        _config(selected=BackendKind.CLOUD, cloud_key=None),
    )
    assert resolution.kind is BackendKind.LOCAL


def test_unusable_target_raises_backend_unconfigured() -> None:
    with pytest.raises(BackendUnconfigured) as exc_info:
        BackendResolver().resolve(
            _request("cloud"), None, _config(cloud_key=None)
        )
    assert exc_info.value.kind is BackendKind.CLOUD
    assert exc_info.value.http_status == 503


def test_force_resolves_for_fixed_kind() -> None:
    resolver = BackendResolver()
    config = _config(selected=BackendKind.CLOUD)

    forced = resolver.resolve(
        _request("cloud:latest"), None, config, force=BackendKind.LOCAL
    )

    assert forced.kind is BackendKind.LOCAL
    assert forced.forced is True
    assert forced.upstream_model == DEFAULT_LOCAL_MODEL
    assert forced.trace["matched_kind"] == "cloud"


def test_force_never_sends_cloud_model_id_to_local() -> None:
    forced = BackendResolver().resolve(
        _request("cloud:anthropic/claude-3-haiku"),
        None,
        _config(),
        force=BackendKind.LOCAL,
    )
    assert forced.upstream_model == DEFAULT_LOCAL_MODEL


@pytest.mark.parametrize(
    ("model", "expected"),
    [("remote:latest", "remote"), ("Remote:LATEST", "Remote"), ("plain", "plain")],
)
def test_strip_latest_suffix(model: str, expected: str) -> None:
    assert strip_latest_suffix(model) == expected
