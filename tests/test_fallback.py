from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from pseudollama.config import CloudBackendConfig, LocalBackendConfig, ProxyConfig
from pseudollama.errors import (
    BackendRejected,
    BackendUnreachable,
    TranslationError,
)
from pseudollama.gateway.fallback import FallbackPolicy
from pseudollama.resolver import BackendResolver
from pseudollama.types import (
    BackendKind,
    CanonicalChatRequest,
    ChatMessage,
    Resolution,
)


def _request(model: str = "cloud") -> CanonicalChatRequest:
    return CanonicalChatRequest(
        model=model, messages=(ChatMessage(role="user", content="hi"),)
    )


def _config(*, local_url: str | None = "http://localhost:1234/v1") -> ProxyConfig:
    return ProxyConfig(
        selected_backend=BackendKind.CLOUD,
        cloud=CloudBackendConfig(api_key="sk-test"),
        local=LocalBackendConfig(endpoint_url=local_url),
    )


def _refused(kind: BackendKind) -> BackendUnreachable:
    return BackendUnreachable(kind, reason="Connection refused", error_type="ConnectError")


class _Recorder:
    def __init__(self, outcomes: dict[BackendKind, Any]) -> None:
        self.outcomes = outcomes
        self.calls: list[Resolution] = []

    async def __call__(self, resolution: Resolution) -> str:
        self.calls.append(resolution)
        outcome = self.outcomes[resolution.kind]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _execute(
    recorder: _Recorder, config: ProxyConfig, request: CanonicalChatRequest | None = None
) -> tuple[Resolution, str]:
    resolver = BackendResolver()
    request = request or _request()
    resolution = resolver.resolve(request, None, config)
    policy = FallbackPolicy(resolver)
    return asyncio.run(policy.execute(request, None, config, resolution, recorder))


def test_success_does_not_touch_alternate() -> None:
    recorder = _Recorder({BackendKind.CLOUD: "cloud-answer"})
    served_by, result = _execute(recorder, _config())
    assert result == "cloud-answer"
    assert served_by.kind is BackendKind.CLOUD
    assert len(recorder.calls) == 1


def test_connection_refused_falls_back_to_local_exactly_once(caplog: Any) -> None:
    recorder = _Recorder(
        {BackendKind.CLOUD: _refused(BackendKind.CLOUD), BackendKind.LOCAL: "local-answer"}
    )
    with caplog.at_level(logging.WARNING):
        served_by, result = _execute(recorder, _config())

    assert result == "local-answer"
    assert [call.kind for call in recorder.calls] == [BackendKind.CLOUD, BackendKind.LOCAL]
    assert served_by.kind is BackendKind.LOCAL
    assert served_by.forced is True
    assert served_by.upstream_model == "unsloth-phi-4"
    assert "proxy_fallback" in caplog.text


def test_rejection_triggers_fallback() -> None:
    recorder = _Recorder(
        {
            BackendKind.CLOUD: BackendRejected(
                BackendKind.CLOUD, status_code=429, reason="rate limited"
            ),
            BackendKind.LOCAL: "local-answer",
        }
    )
    served_by, _ = _execute(recorder, _config())
    assert served_by.kind is BackendKind.LOCAL


def test_alternate_failure_surfaces_original_error(caplog: Any) -> None:
    original = _refused(BackendKind.CLOUD)
    recorder = _Recorder(
        {
            BackendKind.CLOUD: original,
            BackendKind.LOCAL: BackendRejected(
                BackendKind.LOCAL, status_code=500, reason="model crashed"
            ),
        }
    )
    with caplog.at_level(logging.WARNING):
        with pytest.raises(BackendUnreachable) as exc_info:
            _execute(recorder, _config())

    assert exc_info.value is original
    assert len(recorder.calls) == 2
    assert "proxy_fallback_failed" in caplog.text
    assert "model crashed" in caplog.text


def test_unusable_alternate_surfaces_original_without_retry() -> None:
    original = _refused(BackendKind.CLOUD)
    recorder = _Recorder({BackendKind.CLOUD: original})
    with pytest.raises(BackendUnreachable) as exc_info:
        _execute(recorder, _config(local_url=None))
    assert exc_info.value is original
    assert len(recorder.calls) == 1


def test_translation_errors_do_not_trigger_fallback() -> None:
    recorder = _Recorder(
        {
            BackendKind.CLOUD: TranslationError(BackendKind.CLOUD, "missing 'choices'"),
            BackendKind.LOCAL: "local-answer",
        }
    )
    with pytest.raises(TranslationError):
        _execute(recorder, _config())
    assert len(recorder.calls) == 1


def test_fallback_leaves_stored_selection_unchanged() -> None:
    config = _config()
    recorder = _Recorder(
        {BackendKind.CLOUD: _refused(BackendKind.CLOUD), BackendKind.LOCAL: "ok"}
    )
    _execute(recorder, config)
    assert config.selected_backend is BackendKind.CLOUD
