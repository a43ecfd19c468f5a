from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 12345
    config_path: str = "data/config.yaml"
    openrouter_api_key: str | None = None
    web_ui_origin: str = "localhost:12345"
    backend_connect_timeout_seconds: float = 5.0
    backend_pool_timeout_seconds: float = 5.0
    backend_max_connections: int = 256
    backend_max_keepalive_connections: int = 64
    reachability_ttl_seconds: float = 30.0
    reachability_probe_timeout_seconds: float = 2.0
    audit_log_enabled: bool = True
    audit_log_path: str = "logs/model_communications.jsonl"
    audit_log_max_bytes: int = 10 * 1024 * 1024
    embedding_dimensions: int = 1536

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def web_ui_hosts(self) -> list[str]:
        return _split_csv(self.web_ui_origin)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
