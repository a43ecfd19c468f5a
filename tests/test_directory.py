from __future__ import annotations

import asyncio

import httpx

from pseudollama.config import (
    CloudBackendConfig,
    ConfigProvider,
    LocalBackendConfig,
    ProxyConfig,
)
from pseudollama.directory import ModelDirectory, ReachabilityCache
from pseudollama.gateway.client import BackendClient
from pseudollama.types import BackendKind


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _directory(
    *,
    cloud_key: str | None = None,
    local_url: str | None = "http://localhost:1234/v1",
    local_up: bool = True,
    ttl: float = 30.0,
) -> tuple[ModelDirectory, list[str], _Clock]:
    probes: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        probes.append(str(request.url))
        if not local_up:
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(200, json={"data": [{"id": "phi-4"}]})

    client = BackendClient()
    client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=30.0)
    provider = ConfigProvider(
        ProxyConfig(
            cloud=CloudBackendConfig(api_key=cloud_key),
            local=LocalBackendConfig(endpoint_url=local_url),
        )
    )
    clock = _Clock()
    directory = ModelDirectory(provider, client, ReachabilityCache(ttl, clock=clock))
    return directory, probes, clock


def test_probe_is_cached_until_ttl_expires() -> None:
    directory, probes, clock = _directory()

    async def scenario() -> None:
        assert await directory.available_backends() == [BackendKind.LOCAL]
        clock.now += 29.0
        assert await directory.available_backends() == [BackendKind.LOCAL]
        assert len(probes) == 1
        clock.now += 1.0
        assert await directory.available_backends() == [BackendKind.LOCAL]
        assert len(probes) == 2

    asyncio.run(scenario())
    assert probes[0] == "http://localhost:1234/v1/models"


def test_failed_probe_hides_local_for_ttl() -> None:
    directory, probes, clock = _directory(cloud_key="sk-test", local_up=False)

    async def scenario() -> None:
        assert await directory.available_backends() == [BackendKind.CLOUD]
        clock.now += 10.0
        assert await directory.available_backends() == [BackendKind.CLOUD]

    asyncio.run(scenario())
    assert len(probes) == 1


def test_unusable_kinds_are_never_listed_or_probed() -> None:
    directory, probes, _ = _directory(cloud_key=None, local_url=None)
    assert asyncio.run(directory.available_backends()) == []
    assert probes == []


def test_cloud_listed_without_probe() -> None:
    directory, probes, _ = _directory(cloud_key="sk-test", local_url=None)
    assert asyncio.run(directory.available_backends()) == [BackendKind.CLOUD]
    assert probes == []


def test_listing_views_use_pseudo_model_names() -> None:
    directory, _, _ = _directory(cloud_key="sk-test")

    tags = asyncio.run(directory.ollama_tags())
    models = asyncio.run(directory.openai_models())

    assert [item["model"] for item in tags["models"]] == [
        "openrouter:latest",
        "lmstudio:latest",
    ]
    assert [item["name"] for item in tags["models"]] == ["OpenRouter API", "LM Studio"]
    assert models["object"] == "list"
    assert [item["id"] for item in models["data"]] == [
        "openrouter-latest",
        "lmstudio-latest",
    ]
    assert all(item["owned_by"] == "pseudollama" for item in models["data"])


def test_concurrent_listings_share_one_probe() -> None:
    probes: list[str] = []

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        probes.append(str(request.url))
        await asyncio.sleep(0.05)
        return httpx.Response(200, json={"data": [{"id": "phi-4"}]})

    client = BackendClient()
    client.client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler), timeout=30.0)
    provider = ConfigProvider(
        ProxyConfig(local=LocalBackendConfig(endpoint_url="http://localhost:1234/v1"))
    )
    directory = ModelDirectory(provider, client, ReachabilityCache(30.0))

    async def scenario() -> list[list[BackendKind]]:
        return await asyncio.gather(*(directory.available_backends() for _ in range(5)))

    results = asyncio.run(scenario())

    assert results == [[BackendKind.LOCAL]] * 5
    assert len(probes) == 1
