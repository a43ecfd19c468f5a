from __future__ import annotations

import logging
import random
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from pseudollama import __version__
from pseudollama.config import ConfigProvider
from pseudollama.directory import ModelDirectory, ReachabilityCache
from pseudollama.errors import ProxyError
from pseudollama.gateway.audit import CommunicationLog
from pseudollama.gateway.client import BackendClient
from pseudollama.gateway.fallback import FallbackPolicy
from pseudollama.gateway.proxy import DISABLED_MESSAGE, ChatProxy, disabled_response
from pseudollama.resolver import BackendResolver
from pseudollama.settings import get_settings
from pseudollama.translator import iso_timestamp, openai_error_body
from pseudollama.types import BackendKind, RequestOrigin, WireFormat

app = FastAPI(
    title="PseudoLlama",
    description="Ollama and OpenAI compatible API that routes chats to a cloud or local backend.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def request_logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    request.state.request_id = request_id
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http_request request_id=%s method=%s path=%s status=%d latency_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000.0,
    )
    return response


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config_provider = ConfigProvider.from_file(
        settings.config_path, env_cloud_api_key=settings.openrouter_api_key
    )
    backend_client = BackendClient(
        connect_timeout_seconds=settings.backend_connect_timeout_seconds,
        pool_timeout_seconds=settings.backend_pool_timeout_seconds,
        max_connections=settings.backend_max_connections,
        max_keepalive_connections=settings.backend_max_keepalive_connections,
        probe_timeout_seconds=settings.reachability_probe_timeout_seconds,
    )
    resolver = BackendResolver(web_ui_hosts=settings.web_ui_hosts)
    audit_log = CommunicationLog(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
        max_bytes=settings.audit_log_max_bytes,
    )
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.config_provider = config_provider
    app.state.backend_client = backend_client
    app.state.resolver = resolver
    app.state.audit_log = audit_log
    app.state.directory = ModelDirectory(
        config_provider,
        backend_client,
        ReachabilityCache(ttl_seconds=settings.reachability_ttl_seconds),
    )
    app.state.chat_proxy = ChatProxy(
        config_provider=config_provider,
        client=backend_client,
        resolver=resolver,
        fallback=FallbackPolicy(resolver),
        audit_log=audit_log,
    )
    config = config_provider.snapshot()
    logger.info(
        (
            "startup complete config_path=%s selected_backend=%s cloud_usable=%s "
            "local_usable=%s audit_log_enabled=%s audit_log_path=%s"
        ),
        settings.config_path,
        config.selected_backend.value,
        config.descriptor(BackendKind.CLOUD).usable,
        config.descriptor(BackendKind.LOCAL).usable,
        settings.audit_log_enabled,
        settings.audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    backend_client: BackendClient | None = getattr(app.state, "backend_client", None)
    if backend_client is not None:
        await backend_client.close()
    audit_log: CommunicationLog | None = getattr(app.state, "audit_log", None)
    if audit_log is not None:
        audit_log.close()
    logger.info("shutdown complete")


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        # Callers report a missing object body in their own error shape.
        return None


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or uuid4().hex[:12]


def _server_enabled() -> bool:
    config_provider: ConfigProvider = app.state.config_provider
    return config_provider.enabled


async def _proxy_chat(request: Request, wire_format: WireFormat) -> Response:
    payload = await _read_json(request)
    proxy: ChatProxy = app.state.chat_proxy
    return await proxy.handle(
        payload,
        wire_format,
        origin=RequestOrigin(referer=request.headers.get("referer")),
        endpoint=request.url.path,
        request_id=_request_id(request),
        is_disconnected=request.is_disconnected,
    )


@app.post("/api/chat")
async def ollama_chat(request: Request) -> Response:
    return await _proxy_chat(request, WireFormat.OLLAMA_CHAT)


@app.post("/api/generate")
async def ollama_generate(request: Request) -> Response:
    return await _proxy_chat(request, WireFormat.OLLAMA_GENERATE)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _proxy_chat(request, WireFormat.OPENAI_CHAT)


@app.post("/v1/completions")
async def completions(request: Request) -> Response:
    return await _proxy_chat(request, WireFormat.OPENAI_COMPLETIONS)


@app.get("/api/tags")
async def ollama_tags() -> dict[str, Any]:
    if not _server_enabled():
        return {"models": [], "error": DISABLED_MESSAGE}
    directory: ModelDirectory = app.state.directory
    return await directory.ollama_tags()


@app.get("/v1/models")
async def openai_models() -> Response:
    if not _server_enabled():
        return disabled_response(WireFormat.OPENAI_CHAT)
    directory: ModelDirectory = app.state.directory
    return JSONResponse(content=await directory.openai_models())


@app.post("/api/pull")
async def ollama_pull() -> dict[str, Any]:
    if not _server_enabled():
        return {"error": DISABLED_MESSAGE}
    return {
        "status": "success",
        "digest": "sha256:pseudo",
        "total_size": 0,
        "completed_size": 0,
    }


def _pseudo_embedding() -> list[float]:
    dimensions = max(1, get_settings().embedding_dimensions)
    return [random.uniform(-1.0, 1.0) for _ in range(dimensions)]


@app.post("/api/embeddings")
async def ollama_embeddings(request: Request) -> dict[str, Any]:
    if not _server_enabled():
        return {"error": DISABLED_MESSAGE}
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        return {"error": "Expected a JSON object request body."}
    for field in ("model", "prompt"):
        if not payload.get(field):
            return {"error": f"Missing required field: {field}"}
    return {"embedding": _pseudo_embedding()}


@app.post("/v1/embeddings")
async def openai_embeddings(request: Request) -> Response:
    if not _server_enabled():
        return disabled_response(WireFormat.OPENAI_CHAT)
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        return JSONResponse(
            status_code=400,
            content=openai_error_body(
                "Expected a JSON object request body.",
                "invalid_request_error",
                "invalid_request",
            ),
        )
    for field in ("model", "input"):
        if not payload.get(field):
            return JSONResponse(
                status_code=400,
                content=openai_error_body(
                    f"Missing required field: {field}",
                    "invalid_request_error",
                    "invalid_request",
                ),
            )
    inputs = payload["input"] if isinstance(payload["input"], list) else [payload["input"]]
    return JSONResponse(
        content={
            "object": "list",
            "data": [
                {"object": "embedding", "embedding": _pseudo_embedding(), "index": index}
                for index in range(len(inputs))
            ],
            "model": payload["model"],
            "usage": {"prompt_tokens": 0, "total_tokens": 0},
        }
    )


def _health() -> dict[str, Any]:
    started_at: float = getattr(app.state, "started_at", time.monotonic())
    return {
        "status": "ok",
        "version": __version__,
        "uptime": round(time.monotonic() - started_at, 3),
        "timestamp": iso_timestamp(),
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    return _health()


@app.get("/api/health")
async def ollama_health() -> dict[str, Any]:
    return _health()


@app.get("/v1/health")
async def openai_health() -> dict[str, Any]:
    return _health()


@app.get("/api/server/status")
async def server_status() -> dict[str, Any]:
    return {"enabled": _server_enabled()}


@app.post("/api/server/toggle")
async def server_toggle(request: Request) -> Response:
    body = await request.body()
    payload = await _read_json(request) if body.strip() else {}
    config_provider: ConfigProvider = app.state.config_provider
    if isinstance(payload, dict) and "enabled" not in payload:
        enabled = not config_provider.enabled
    elif isinstance(payload, dict) and isinstance(payload["enabled"], bool):
        enabled = payload["enabled"]
    else:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Invalid request. Expected { enabled: boolean }",
            },
        )
    config_provider.set_enabled(enabled)
    return JSONResponse(content={"success": True, "enabled": enabled})


def _admin_disabled() -> JSONResponse:
    return JSONResponse(
        status_code=503, content={"success": False, "message": DISABLED_MESSAGE}
    )


@app.get("/api/config")
async def read_config() -> Response:
    if not _server_enabled():
        return _admin_disabled()
    config_provider: ConfigProvider = app.state.config_provider
    return JSONResponse(content={"success": True, "config": config_provider.masked()})


@app.post("/api/config")
async def update_config(request: Request) -> Response:
    if not _server_enabled():
        return _admin_disabled()
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Expected a JSON object request body."},
        )
    config_provider: ConfigProvider = app.state.config_provider
    try:
        config_provider.update(payload)
    except ValueError as exc:
        # pydantic's ValidationError is a ValueError as well.
        return JSONResponse(
            status_code=400, content={"success": False, "message": str(exc)}
        )
    except OSError as exc:
        logger.error("config_persist_failed path=%s error=%s", config_provider.path, exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Failed to save configuration"},
        )
    return JSONResponse(
        content={
            "success": True,
            "message": "Configuration updated successfully",
            "config": config_provider.masked(),
        }
    )


@app.get("/api/backends/{kind}/models")
async def backend_models(kind: str) -> Response:
    if not _server_enabled():
        return _admin_disabled()
    try:
        backend_kind = BackendKind.parse(kind)
    except ValueError:
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": f"Unknown backend '{kind}'."},
        )
    config_provider: ConfigProvider = app.state.config_provider
    descriptor = config_provider.descriptor(backend_kind)
    if not descriptor.usable:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": f"The {backend_kind.value} backend is not configured.",
            },
        )
    backend_client: BackendClient = app.state.backend_client
    try:
        models = await backend_client.list_models(descriptor)
    except ProxyError as exc:
        logger.warning(
            "backend_models_failed backend=%s error_type=%s error=%s",
            backend_kind.value,
            exc.__class__.__name__,
            exc.message,
        )
        return JSONResponse(
            status_code=502,
            content={"success": False, "message": f"Error fetching models: {exc.message}"},
        )
    return JSONResponse(content={"success": True, "models": models})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        logger.info("route_not_found method=%s path=%s", request.method, request.url.path)
        return JSONResponse(
            status_code=404,
            content={
                "error": "Not found",
                "message": (
                    f"Endpoint {request.method} {request.url.path} is not implemented "
                    "by PseudoLlama"
                ),
            },
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(ProxyError)
async def proxy_error_handler(_: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content=openai_error_body(exc.message, exc.error_type, exc.code),
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("pseudollama.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
