from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from pseudollama.config import ConfigProvider
from pseudollama.gateway.client import BackendClient
from pseudollama.translator import OWNED_BY, iso_timestamp
from pseudollama.types import BackendKind

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class ModelListing:
    kind: BackendKind
    ollama_model: str
    ollama_name: str
    openai_id: str


MODEL_LISTINGS: dict[BackendKind, ModelListing] = {
    BackendKind.CLOUD: ModelListing(
        kind=BackendKind.CLOUD,
        ollama_model="openrouter:latest",
        ollama_name="OpenRouter API",
        openai_id="openrouter-latest",
    ),
    BackendKind.LOCAL: ModelListing(
        kind=BackendKind.LOCAL,
        ollama_model="lmstudio:latest",
        ollama_name="LM Studio",
        openai_id="lmstudio-latest",
    ),
}


@dataclass(slots=True)
class ReachabilityCacheEntry:
    last_checked_at: float
    reachable: bool
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.last_checked_at < self.ttl


class ReachabilityCache:
    """Per-kind probe results, trusted until their TTL runs out."""

    def __init__(
        self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._entries: dict[BackendKind, ReachabilityCacheEntry] = {}

    def get(self, kind: BackendKind) -> ReachabilityCacheEntry | None:
        entry = self._entries.get(kind)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        return entry

    def put(self, kind: BackendKind, reachable: bool) -> ReachabilityCacheEntry:
        entry = ReachabilityCacheEntry(
            last_checked_at=self._clock(),
            reachable=reachable,
            ttl=self.ttl_seconds,
        )
        self._entries[kind] = entry
        return entry


class ModelDirectory:
    """Decides which backends are advertised to callers.

    The cloud backend is listed whenever it is configured. The local backend
    is also probed, and the probe result is cached so a listing request does
    not hit the local server every time.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        client: BackendClient,
        cache: ReachabilityCache,
    ) -> None:
        self.config_provider = config_provider
        self.client = client
        self.cache = cache
        self._probe_locks: dict[BackendKind, asyncio.Lock] = {}

    async def is_reachable(self, kind: BackendKind) -> bool:
        cached = self.cache.get(kind)
        if cached is not None:
            return cached.reachable
        # One probe per kind at a time; waiters reuse its result.
        async with self._probe_locks.setdefault(kind, asyncio.Lock()):
            cached = self.cache.get(kind)
            if cached is not None:
                return cached.reachable
            descriptor = self.config_provider.descriptor(kind)
            reachable = await self.client.probe(descriptor)
            self.cache.put(kind, reachable)
        logger.info("backend_probe backend=%s reachable=%s", kind.value, reachable)
        return reachable

    async def available_backends(self) -> list[BackendKind]:
        config = self.config_provider.snapshot()
        available: list[BackendKind] = []
        if config.descriptor(BackendKind.CLOUD).usable:
            available.append(BackendKind.CLOUD)
        if config.descriptor(BackendKind.LOCAL).usable and await self.is_reachable(
            BackendKind.LOCAL
        ):
            available.append(BackendKind.LOCAL)
        return available

    async def ollama_tags(self) -> dict[str, Any]:
        models = [
            render_ollama_tag(MODEL_LISTINGS[kind])
            for kind in await self.available_backends()
        ]
        return {"models": models}

    async def openai_models(self) -> dict[str, Any]:
        data = [
            render_openai_model(MODEL_LISTINGS[kind])
            for kind in await self.available_backends()
        ]
        return {"object": "list", "data": data}


def render_ollama_tag(listing: ModelListing) -> dict[str, Any]:
    return {
        "name": listing.ollama_name,
        "model": listing.ollama_model,
        "modified_at": iso_timestamp(),
        "size": 0,
        "digest": "n/a",
        "details": {"format": "api", "family": listing.kind.value},
    }


def render_openai_model(listing: ModelListing) -> dict[str, Any]:
    return {
        "id": listing.openai_id,
        "object": "model",
        "created": int(time.time()),
        "owned_by": OWNED_BY,
    }
