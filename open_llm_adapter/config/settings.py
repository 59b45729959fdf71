from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ENVIRONMENT = "development"


class Settings(BaseSettings):
    env: str = DEFAULT_ENVIRONMENT
    llm_config_path: str = "config/llm"
    default_provider: str | None = None
    openai_compatible_providers: str = "openai,deepseek"
    rsa_private_key_path: str = "keys/llm_private.pem"
    rsa_public_key_path: str = "keys/llm_public.pem"
    rsa_key_size: int = 2048
    rsa_generate_keys_if_missing: bool = False
    backend_timeout_seconds: float = 120.0
    backend_connect_timeout_seconds: float = 5.0
    stream_queue_size: int = 10
    media_fetch_enabled: bool = True
    media_fetch_timeout_seconds: float = 10.0
    media_fetch_max_bytes: int = 20 * 1024 * 1024
    audit_log_enabled: bool = False
    audit_log_path: str = "logs/llm_requests.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("env", mode="before")
    @classmethod
    def _default_environment(cls, value: object) -> object:
        if value is None:
            return DEFAULT_ENVIRONMENT
        if isinstance(value, str) and not value.strip():
            return DEFAULT_ENVIRONMENT
        return value.strip() if isinstance(value, str) else value

    @property
    def openai_compatible_providers_list(self) -> list[str]:
        return [item.lower() for item in _split_csv(self.openai_compatible_providers)]


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
