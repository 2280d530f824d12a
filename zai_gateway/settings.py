from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    zai_tokens: str = ""
    zai_token: str = ""
    zai_signing_secret: str | None = None
    upstream_origin: str = "https://chat.z.ai"
    upstream_url: str = "https://chat.z.ai/api/chat/completions"
    upstream_files_url: str = "https://chat.z.ai/api/files"
    anonymous_token_enabled: bool = True
    anonymous_token_ttl_seconds: float = 3600.0
    token_failure_threshold: int = 3
    upstream_max_token_retries: int = 1
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 60.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    upstream_headers_deadline_seconds: float = 60.0
    media_fetch_timeout_seconds: float = 30.0
    fingerprint_cache_seconds: float = 300.0
    fe_version: str = "prod-fe-1.0.103"
    think_tags_mode: Literal["strip", "think", "raw"] = "strip"
    media_upload_failure_policy: Literal["drop", "fail"] = "drop"
    default_stream: bool = True
    model_catalog_path: str | None = None
    stats_recent_requests: int = 100

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def credential_tokens(self) -> list[str]:
        tokens = _split_csv(self.zai_tokens)
        if tokens:
            return tokens
        single = self.zai_token.strip()
        return [single] if single else []


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
