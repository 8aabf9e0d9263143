from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    upstream_chat_url: str = "https://chat.qwenlm.ai/api/chat/completions"
    upstream_models_url: str = "https://chat.qwenlm.ai/api/models"
    upstream_timeout_seconds: float = 30.0
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 30.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    stream_idle_timeout_seconds: float = 30.0
    stream_max_buffer_bytes: int = 1024 * 1024
    max_concurrent_requests: int = 100
    rate_limit_retry_after_seconds: int = 5
    models_cache_ttl_seconds: float = 3600.0
    response_compression_enabled: bool = True
    response_compression_min_bytes: int = 256
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
