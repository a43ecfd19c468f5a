from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from pseudollama.errors import BackendRejected, BackendUnreachable, TranslationError
from pseudollama.translator import codec_for
from pseudollama.types import BackendDescriptor

logger = logging.getLogger("uvicorn.error")

_MAX_ERROR_BODY_CHARS = 500


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": str(exc).strip() or repr(exc),
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "_request", None)
    if isinstance(request, httpx.Request):
        details["request_url"] = str(request.url)
    return details


def _rejection_reason(body: bytes, descriptor: BackendDescriptor) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        parsed = json.loads(text) if text else None
    except ValueError:
        parsed = None
    message = codec_for(descriptor.kind).error_message(parsed)
    if message:
        return message
    return text[:_MAX_ERROR_BODY_CHARS] or "empty response body"


class BackendClient:
    """Issues chat and metadata calls against a backend descriptor.

    Transport failures become :class:`BackendUnreachable` and non-success
    statuses become :class:`BackendRejected`, the two classes the fallback
    policy reacts to.
    """

    def __init__(
        self,
        *,
        connect_timeout_seconds: float = 5.0,
        pool_timeout_seconds: float = 5.0,
        max_connections: int = 256,
        max_keepalive_connections: int = 64,
        probe_timeout_seconds: float = 2.0,
    ) -> None:
        self.connect_timeout_seconds = max(0.1, float(connect_timeout_seconds))
        self.pool_timeout_seconds = max(0.1, float(pool_timeout_seconds))
        self.probe_timeout_seconds = max(0.1, float(probe_timeout_seconds))
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=self.connect_timeout_seconds,
                pool=self.pool_timeout_seconds,
            ),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
            ),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def _timeout(self, total_seconds: float) -> httpx.Timeout:
        return httpx.Timeout(
            timeout=None,
            connect=min(self.connect_timeout_seconds, total_seconds),
            read=total_seconds,
            write=total_seconds,
            pool=self.pool_timeout_seconds,
        )

    async def open_chat(
        self,
        descriptor: BackendDescriptor,
        payload: dict[str, Any],
        *,
        stream: bool,
        request_id: str = "-",
    ) -> httpx.Response:
        """Sends a chat request and returns the open response.

        The caller owns the returned response and must close it.
        """
        codec = codec_for(descriptor.kind)
        started = time.perf_counter()
        request = self.client.build_request(
            method="POST",
            url=f"{descriptor.base_url}{codec.chat_path}",
            json=payload,
            headers=codec.headers(descriptor),
            timeout=self._timeout(descriptor.timeout_seconds),
        )
        try:
            upstream = await self.client.send(request, stream=stream)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "backend_request_error request_id=%s backend=%s error_type=%s error=%s",
                request_id,
                descriptor.kind.value,
                details["error_type"],
                details["error"],
            )
            raise BackendUnreachable(
                descriptor.kind,
                reason=details["error"],
                error_type=details["error_type"],
                is_timeout=details["is_timeout"],
            ) from exc

        logger.info(
            "backend_connected request_id=%s backend=%s status=%d connect_ms=%.2f",
            request_id,
            descriptor.kind.value,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        if upstream.status_code >= 400:
            try:
                body = await upstream.aread()
            except httpx.RequestError:
                body = b""
            finally:
                await upstream.aclose()
            raise BackendRejected(
                descriptor.kind,
                status_code=upstream.status_code,
                reason=_rejection_reason(body, descriptor),
            )
        return upstream

    async def read_json(
        self, descriptor: BackendDescriptor, upstream: httpx.Response
    ) -> Any:
        try:
            body = await upstream.aread()
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            raise BackendUnreachable(
                descriptor.kind,
                reason=details["error"],
                error_type=details["error_type"],
                is_timeout=details["is_timeout"],
            ) from exc
        finally:
            await upstream.aclose()
        try:
            return json.loads(body)
        except ValueError as exc:
            raise TranslationError(
                descriptor.kind,
                "response body is not valid JSON",
                status_code=upstream.status_code,
            ) from exc

    async def probe(self, descriptor: BackendDescriptor) -> bool:
        """Cheap reachability check against the backend's model listing."""
        codec = codec_for(descriptor.kind)
        try:
            response = await self.client.get(
                f"{descriptor.base_url}{codec.models_path}",
                headers=codec.headers(descriptor),
                timeout=self._timeout(self.probe_timeout_seconds),
            )
        except httpx.RequestError as exc:
            logger.info(
                "backend_probe_failed backend=%s error_type=%s",
                descriptor.kind.value,
                exc.__class__.__name__,
            )
            return False
        reachable = response.status_code < 400
        if not reachable:
            logger.info(
                "backend_probe_failed backend=%s status=%d",
                descriptor.kind.value,
                response.status_code,
            )
        return reachable

    async def list_models(self, descriptor: BackendDescriptor) -> list[dict[str, Any]]:
        codec = codec_for(descriptor.kind)
        upstream = await self._get(descriptor, codec.models_path)
        body = await self.read_json(descriptor, upstream)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise TranslationError(descriptor.kind, "missing 'data' in model listing")
        models: list[dict[str, Any]] = []
        for item in data:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                continue
            models.append(
                {
                    "id": item["id"],
                    "name": item.get("name") or item["id"],
                    "description": item.get("description") or "",
                    "context_length": item.get("context_length"),
                    "created": item.get("created"),
                }
            )
        return models

    async def _get(self, descriptor: BackendDescriptor, path: str) -> httpx.Response:
        codec = codec_for(descriptor.kind)
        request = self.client.build_request(
            method="GET",
            url=f"{descriptor.base_url}{path}",
            headers=codec.headers(descriptor),
            timeout=self._timeout(descriptor.timeout_seconds),
        )
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            raise BackendUnreachable(
                descriptor.kind,
                reason=details["error"],
                error_type=details["error_type"],
                is_timeout=details["is_timeout"],
            ) from exc
        if upstream.status_code >= 400:
            body = await upstream.aread()
            await upstream.aclose()
            raise BackendRejected(
                descriptor.kind,
                status_code=upstream.status_code,
                reason=_rejection_reason(body, descriptor),
            )
        return upstream
