from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from threading import Lock
from typing import Any
from uuid import uuid4

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pseudollama.types import BackendDescriptor, BackendKind

logger = logging.getLogger("uvicorn.error")

MASK_PREFIX = "••••"

DEFAULT_CLOUD_ENDPOINT = "https://openrouter.ai/api/v1"
DEFAULT_CLOUD_MODEL = "google/gemini-2.0-flash-001"
DEFAULT_LOCAL_ENDPOINT = "http://localhost:1234/v1"
DEFAULT_LOCAL_MODEL = "unsloth-phi-4"


class BackendConfig(BaseModel):
    endpoint_url: str | None = None
    api_key: str | None = None
    model: str
    timeout_seconds: float = 30.0
    max_tokens: int | None = None

    @field_validator("endpoint_url", "api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CloudBackendConfig(BackendConfig):
    endpoint_url: str | None = DEFAULT_CLOUD_ENDPOINT
    model: str = DEFAULT_CLOUD_MODEL
    timeout_seconds: float = 120.0


class LocalBackendConfig(BackendConfig):
    endpoint_url: str | None = DEFAULT_LOCAL_ENDPOINT
    model: str = DEFAULT_LOCAL_MODEL
    timeout_seconds: float = 30.0
    max_tokens: int | None = 2048


class ProxyConfig(BaseModel):
    selected_backend: BackendKind = BackendKind.LOCAL
    enabled: bool = True
    cloud: CloudBackendConfig = Field(default_factory=CloudBackendConfig)
    local: LocalBackendConfig = Field(default_factory=LocalBackendConfig)

    model_config = ConfigDict(frozen=True)

    @field_validator("selected_backend", mode="before")
    @classmethod
    def _coerce_kind(cls, value: Any) -> BackendKind:
        return BackendKind.parse(value)

    def backend(self, kind: BackendKind) -> BackendConfig:
        return self.cloud if kind is BackendKind.CLOUD else self.local

    def descriptor(self, kind: BackendKind) -> BackendDescriptor:
        backend = self.backend(kind)
        return BackendDescriptor(
            kind=kind,
            endpoint_url=backend.endpoint_url,
            api_key=backend.api_key,
            native_model_id=backend.model,
            timeout_seconds=max(0.1, float(backend.timeout_seconds)),
            max_tokens=backend.max_tokens,
        )


def mask_secret(value: str | None) -> str:
    if not value:
        return ""
    return f"{MASK_PREFIX}{value[-4:]}"


def _is_masked(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(MASK_PREFIX)


_LEGACY_SECTION_NAMES = {
    BackendKind.CLOUD: "openrouter",
    BackendKind.LOCAL: "lmstudio",
}
_LEGACY_FIELD_NAMES = {
    "url": "endpoint_url",
    "apiKey": "api_key",
    "maxTokens": "max_tokens",
}


class ConfigProvider:
    """Holds the current :class:`ProxyConfig` snapshot.

    Readers call :meth:`snapshot` without locking and may observe the previous
    snapshot while a write is in flight. Writers are serialized, persist the
    new document to YAML (minus environment-supplied secrets) and then swap
    the reference.
    """

    def __init__(
        self,
        config: ProxyConfig | None = None,
        *,
        path: str | Path | None = None,
        env_cloud_api_key: str | None = None,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self._env_cloud_api_key = env_cloud_api_key or None
        self._write_lock = Lock()
        self._config = _with_cloud_api_key(
            config or ProxyConfig(), self._env_cloud_api_key
        )

    @classmethod
    def from_file(
        cls, path: str | Path, *, env_cloud_api_key: str | None = None
    ) -> ConfigProvider:
        resolved = Path(path)
        raw: Any = {}
        if resolved.exists():
            with resolved.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Expected YAML object in '{resolved}'.")
        return cls(
            ProxyConfig.model_validate(raw),
            path=resolved,
            env_cloud_api_key=env_cloud_api_key,
        )

    def snapshot(self) -> ProxyConfig:
        return self._config

    def descriptor(self, kind: BackendKind) -> BackendDescriptor:
        return self._config.descriptor(kind)

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def set_enabled(self, enabled: bool) -> ProxyConfig:
        with self._write_lock:
            self._config = self._config.model_copy(update={"enabled": bool(enabled)})
        logger.info("server_toggle enabled=%s", enabled)
        return self._config

    def update(self, patch: dict[str, Any]) -> ProxyConfig:
        with self._write_lock:
            document = self._config.model_dump(mode="json")
            env_cloud_api_key = self._env_cloud_api_key
            changed = False
            selected = patch.get("selected_backend", patch.get("selectedModelType"))
            if selected is not None:
                document["selected_backend"] = BackendKind.parse(selected).value
                changed = True
            for kind in BackendKind:
                section = patch.get(kind.value)
                if section is None:
                    section = patch.get(_LEGACY_SECTION_NAMES[kind])
                if not isinstance(section, dict):
                    continue
                for key, value in section.items():
                    key = _LEGACY_FIELD_NAMES.get(key, key)
                    if key not in BackendConfig.model_fields:
                        continue
                    if key == "api_key":
                        if _is_masked(value):
                            continue
                        if kind is BackendKind.CLOUD:
                            # An explicit key supersedes OPENROUTER_API_KEY.
                            env_cloud_api_key = None
                    document[kind.value][key] = value
                    changed = True
            if not changed:
                raise ValueError("No valid configuration parameters provided.")
            updated = _with_cloud_api_key(
                ProxyConfig.model_validate(document), env_cloud_api_key
            )
            self._persist(updated, env_cloud_api_key)
            self._env_cloud_api_key = env_cloud_api_key
            self._config = updated
        logger.info(
            "config_updated selected_backend=%s cloud_usable=%s local_usable=%s",
            updated.selected_backend.value,
            updated.descriptor(BackendKind.CLOUD).usable,
            updated.descriptor(BackendKind.LOCAL).usable,
        )
        return updated

    def masked(self) -> dict[str, Any]:
        document = self._config.model_dump(mode="json")
        for kind in BackendKind:
            section = document[kind.value]
            section["has_api_key"] = bool(section.get("api_key"))
            section["api_key"] = mask_secret(section.get("api_key"))
        return document

    def _persist(self, config: ProxyConfig, env_cloud_api_key: str | None) -> None:
        if self.path is None:
            return
        document = config.model_dump(mode="json", exclude={"enabled"})
        if env_cloud_api_key and document["cloud"].get("api_key") == env_cloud_api_key:
            document["cloud"]["api_key"] = None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(document, handle, sort_keys=False)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise


def _with_cloud_api_key(config: ProxyConfig, api_key: str | None) -> ProxyConfig:
    if not api_key:
        return config
    cloud = config.cloud.model_copy(update={"api_key": api_key})
    return config.model_copy(update={"cloud": cloud})
