from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from pseudollama.config import ProxyConfig
from pseudollama.errors import BackendRejected, BackendUnconfigured, BackendUnreachable, ProxyError
from pseudollama.resolver import BackendResolver
from pseudollama.types import CanonicalChatRequest, RequestOrigin, Resolution

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

FALLBACK_TRIGGERS: tuple[type[ProxyError], ...] = (BackendUnreachable, BackendRejected)


class FallbackPolicy:
    def __init__(self, resolver: BackendResolver) -> None:
        self.resolver = resolver

    async def execute(
        self,
        request: CanonicalChatRequest,
        origin: RequestOrigin | None,
        config: ProxyConfig,
        resolution: Resolution,
        call: Callable[[Resolution], Awaitable[T]],
        *,
        request_id: str = "-",
    ) -> tuple[Resolution, T]:
        try:
            return resolution, await call(resolution)
        except FALLBACK_TRIGGERS as exc:
            original = exc

        alternate_kind = resolution.kind.alternate
        try:
            alternate = self.resolver.resolve(
                request, origin, config, force=alternate_kind
            )
        except BackendUnconfigured:
            logger.info(
                "proxy_fallback_skipped request_id=%s from=%s to=%s reason=unconfigured",
                request_id,
                resolution.kind.value,
                alternate_kind.value,
            )
            raise original

        logger.warning(
            "proxy_fallback request_id=%s from=%s to=%s upstream_model=%s error=%s",
            request_id,
            resolution.label,
            alternate.kind.value,
            alternate.upstream_model,
            original.message,
        )
        try:
            return alternate, await call(alternate)
        except ProxyError as alternate_exc:
            logger.warning(
                "proxy_fallback_failed request_id=%s backend=%s error_type=%s error=%s",
                request_id,
                alternate.label,
                alternate_exc.__class__.__name__,
                alternate_exc.message,
            )
            raise original
