from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import quote

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from pseudollama.config import ConfigProvider, ProxyConfig
from pseudollama.errors import ProxyError
from pseudollama.gateway.audit import CommunicationLog
from pseudollama.gateway.client import BackendClient
from pseudollama.gateway.fallback import FallbackPolicy
from pseudollama.gateway.relay import StreamingRelay
from pseudollama.normalizer import normalize_request
from pseudollama.resolver import BackendResolver
from pseudollama.translator import (
    build_stream_pipeline,
    codec_for,
    openai_error_body,
    render_error,
    render_response,
)
from pseudollama.types import (
    CanonicalChatRequest,
    CanonicalChatResponse,
    RequestOrigin,
    Resolution,
    WireFormat,
)

logger = logging.getLogger("uvicorn.error")

DISABLED_MESSAGE = "Server is currently disabled"


def disabled_response(wire_format: WireFormat, model: str | None = None) -> JSONResponse:
    if wire_format.is_ollama:
        body = render_response(
            wire_format,
            CanonicalChatResponse(
                model=model or "unknown", content=f"Error: {DISABLED_MESSAGE}"
            ),
        )
        return JSONResponse(status_code=200, content=body)
    return JSONResponse(
        status_code=503,
        content=openai_error_body(DISABLED_MESSAGE, "server_error", "service_unavailable"),
    )


def _requested_model(payload: Any) -> str | None:
    if isinstance(payload, dict) and isinstance(payload.get("model"), str):
        return payload["model"]
    return None


def _routing_headers(request_id: str, resolution: Resolution) -> dict[str, str]:
    return {
        "x-pseudollama-request-id": request_id,
        "x-pseudollama-backend": resolution.kind.value,
        # Caller-supplied model ids may fall outside latin-1.
        "x-pseudollama-upstream-model": quote(resolution.upstream_model, safe=":/@._-"),
        "x-pseudollama-rule": resolution.rule,
        "x-pseudollama-fallback": "true" if resolution.forced else "false",
    }


class ChatProxy:
    def __init__(
        self,
        *,
        config_provider: ConfigProvider,
        client: BackendClient,
        resolver: BackendResolver,
        fallback: FallbackPolicy | None = None,
        audit_log: CommunicationLog | None = None,
    ) -> None:
        self.config_provider = config_provider
        self.client = client
        self.resolver = resolver
        self.fallback = fallback or FallbackPolicy(resolver)
        self.audit_log = audit_log

    async def handle(
        self,
        payload: Any,
        wire_format: WireFormat,
        *,
        origin: RequestOrigin | None = None,
        endpoint: str = "",
        request_id: str = "-",
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> Response:
        started = time.perf_counter()
        requested_model = _requested_model(payload)
        if self.audit_log is not None:
            self.audit_log.request(request_id, endpoint, requested_model or "unknown", payload)

        config = self.config_provider.snapshot()
        if not config.enabled:
            return disabled_response(wire_format, requested_model)

        try:
            request = normalize_request(payload, wire_format)
            resolution = self.resolver.resolve(request, origin, config)
            logger.info(
                "proxy_request request_id=%s wire_format=%s model=%s stream=%s rule=%s backend=%s upstream_model=%s",
                request_id,
                wire_format.value,
                request.model,
                request.stream,
                resolution.rule,
                resolution.kind.value,
                resolution.upstream_model,
            )
            if request.stream:
                return await self._stream(
                    request,
                    wire_format,
                    origin=origin,
                    config=config,
                    resolution=resolution,
                    endpoint=endpoint,
                    request_id=request_id,
                    is_disconnected=is_disconnected,
                )
            return await self._complete(
                request,
                wire_format,
                origin=origin,
                config=config,
                resolution=resolution,
                endpoint=endpoint,
                request_id=request_id,
                started=started,
            )
        except ProxyError as exc:
            return self._error_response(
                exc,
                wire_format,
                model=requested_model,
                endpoint=endpoint,
                request_id=request_id,
            )

    async def _complete(
        self,
        request: CanonicalChatRequest,
        wire_format: WireFormat,
        *,
        origin: RequestOrigin | None,
        config: ProxyConfig,
        resolution: Resolution,
        endpoint: str,
        request_id: str,
        started: float,
    ) -> JSONResponse:
        async def call(target: Resolution) -> Any:
            native = codec_for(target.kind).build_request(request, target)
            upstream = await self.client.open_chat(
                target.descriptor, native, stream=False, request_id=request_id
            )
            return await self.client.read_json(target.descriptor, upstream)

        served_by, body = await self.fallback.execute(
            request, origin, config, resolution, call, request_id=request_id
        )
        canonical = codec_for(served_by.kind).parse_response(
            body, requested_model=request.model
        )
        rendered = render_response(wire_format, canonical)
        logger.info(
            "proxy_response request_id=%s backend=%s status=200 latency_ms=%.2f",
            request_id,
            served_by.label,
            (time.perf_counter() - started) * 1000.0,
        )
        if self.audit_log is not None:
            self.audit_log.response(
                request_id, endpoint, request.model, rendered, backend=served_by.label
            )
        return JSONResponse(
            status_code=200,
            content=rendered,
            headers=_routing_headers(request_id, served_by),
        )

    async def _stream(
        self,
        request: CanonicalChatRequest,
        wire_format: WireFormat,
        *,
        origin: RequestOrigin | None,
        config: ProxyConfig,
        resolution: Resolution,
        endpoint: str,
        request_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None,
    ) -> StreamingResponse:
        async def call(target: Resolution) -> httpx.Response:
            native = codec_for(target.kind).build_request(request, target)
            return await self.client.open_chat(
                target.descriptor, native, stream=True, request_id=request_id
            )

        served_by, upstream = await self.fallback.execute(
            request, origin, config, resolution, call, request_id=request_id
        )
        audit_log = self.audit_log
        relay = StreamingRelay(
            codec=codec_for(served_by.kind),
            pipeline=build_stream_pipeline(wire_format, request.model),
            source=upstream.aiter_bytes(),
            release=upstream.aclose,
            is_disconnected=is_disconnected,
            on_delta=(
                (lambda text: audit_log.stream_chunk(request_id, text))
                if audit_log is not None
                else None
            ),
            request_id=request_id,
        )
        if audit_log is not None:
            audit_log.stream_start(request_id, endpoint, request.model, served_by.label)

        async def body() -> AsyncIterator[bytes]:
            try:
                async for frame in relay.frames():
                    yield frame
            finally:
                if audit_log is not None:
                    audit_log.stream_end(
                        request_id,
                        endpoint,
                        request.model,
                        state=relay.state.value,
                        deltas=relay.deltas_emitted,
                        error=relay.error,
                    )

        headers = _routing_headers(request_id, served_by)
        headers["Cache-Control"] = "no-cache"
        return StreamingResponse(
            content=body(),
            status_code=200,
            headers=headers,
            media_type=relay.media_type,
        )

    def _error_response(
        self,
        exc: ProxyError,
        wire_format: WireFormat,
        *,
        model: str | None,
        endpoint: str,
        request_id: str,
    ) -> JSONResponse:
        status, body = render_error(wire_format, exc, model)
        logger.warning(
            "proxy_error request_id=%s wire_format=%s error_type=%s status=%d error=%s",
            request_id,
            wire_format.value,
            exc.__class__.__name__,
            status,
            exc.message,
        )
        if self.audit_log is not None:
            self.audit_log.response(
                request_id, endpoint, model or "unknown", body, status=status
            )
        return JSONResponse(
            status_code=status,
            content=body,
            headers={"x-pseudollama-request-id": request_id},
        )
