from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, ClassVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from open_llm_adapter.config.settings import DEFAULT_ENVIRONMENT, Settings
from open_llm_adapter.errors import ConfigError, NoConfigError
from open_llm_adapter.utils.yaml_utils import load_yaml_dict

logger = logging.getLogger("uvicorn.error")


class Credential(BaseModel):
    name: str
    enabled: bool = True
    weight: int = Field(default=1, ge=0)
    qps_limit: int = 0
    description: str = ""
    models: tuple[str, ...] = ()
    timeout: int = 0
    proxy: str | None = None

    secret_fields: ClassVar[tuple[str, ...]] = ()

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple)):
            return tuple(
                item.strip() for item in value if isinstance(item, str) and item.strip()
            )
        return value

    @field_validator("proxy", mode="before")
    @classmethod
    def _empty_proxy(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("qps_limit", "timeout", mode="before")
    @classmethod
    def _none_as_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    def timeout_seconds(self, default: float) -> float:
        return float(self.timeout) if self.timeout > 0 else default


class AzureCredential(Credential):
    api_key: str = ""
    endpoint: str = ""
    deployment_id: str = ""
    api_version: str = ""

    secret_fields: ClassVar[tuple[str, ...]] = ("api_key",)


class OpenAICompatibleCredential(Credential):
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    organization_id: str = ""

    secret_fields: ClassVar[tuple[str, ...]] = ("api_key",)


class BedrockCredential(Credential):
    access_key: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    region: str = ""

    secret_fields: ClassVar[tuple[str, ...]] = (
        "access_key",
        "secret_access_key",
        "session_token",
    )


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    provider: str
    source: str
    environments: Mapping[str, tuple[Credential, ...]]

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "environments", MappingProxyType(dict(self.environments))
        )


def parse_provider_document(
    provider: str,
    document: Mapping[str, Any],
    credential_model: type[Credential],
    *,
    source: str = "<memory>",
) -> ProviderConfig:
    raw_environments = document.get("environments")
    if not isinstance(raw_environments, dict):
        raise ConfigError(f"'{source}' must define an 'environments' mapping")

    environments: dict[str, tuple[Credential, ...]] = {}
    for env_name, env_document in raw_environments.items():
        if env_document is None:
            env_document = {}
        if not isinstance(env_document, dict):
            raise ConfigError(
                f"environment '{env_name}' in '{source}' must be a mapping"
            )
        raw_credentials = env_document.get("credentials") or []
        if not isinstance(raw_credentials, list):
            raise ConfigError(
                f"'credentials' of environment '{env_name}' in '{source}' must be a list"
            )
        credentials: list[Credential] = []
        seen_names: set[str] = set()
        for position, raw_credential in enumerate(raw_credentials):
            try:
                credential = credential_model.model_validate(raw_credential)
            except ValidationError as exc:
                raise ConfigError(
                    f"invalid credential #{position} in environment '{env_name}' "
                    f"of '{source}': {exc.errors(include_url=False)}"
                ) from exc
            if credential.name in seen_names:
                raise ConfigError(
                    f"duplicate credential name '{credential.name}' in environment "
                    f"'{env_name}' of '{source}'"
                )
            seen_names.add(credential.name)
            credentials.append(credential)
        environments[str(env_name)] = tuple(credentials)

    return ProviderConfig(provider=provider, source=source, environments=environments)


@dataclass(frozen=True, slots=True)
class ConfigSnapshot:
    """Immutable view of every provider document for one process environment."""

    environment: str
    providers: Mapping[str, ProviderConfig]
    loaded_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "providers", MappingProxyType(dict(self.providers)))

    @classmethod
    def from_documents(
        cls,
        documents: Mapping[str, Mapping[str, Any]],
        credential_models: Mapping[str, type[Credential]],
        *,
        environment: str = DEFAULT_ENVIRONMENT,
    ) -> ConfigSnapshot:
        providers = {
            provider: parse_provider_document(
                provider,
                document,
                credential_models[provider],
                source=f"<{provider}>",
            )
            for provider, document in documents.items()
        }
        return cls(environment=environment or DEFAULT_ENVIRONMENT, providers=providers)

    def credentials_for(
        self, provider: str, environment: str | None = None
    ) -> tuple[Credential, ...]:
        env = environment or self.environment
        provider_config = self.providers.get(provider)
        if provider_config is None:
            raise NoConfigError(provider, env)
        credentials = provider_config.environments.get(env)
        if credentials is None:
            raise NoConfigError(provider, env)
        return credentials

    def models_by_provider(self, environment: str | None = None) -> dict[str, list[str]]:
        env = environment or self.environment
        result: dict[str, list[str]] = {}
        for provider, provider_config in sorted(self.providers.items()):
            models: list[str] = []
            for credential in provider_config.environments.get(env, ()):
                if not credential.enabled:
                    continue
                for model in credential.models:
                    if model not in models:
                        models.append(model)
            if models:
                result[provider] = models
        return result


def load_config_snapshot(
    config_root: str | Path,
    credential_models: Mapping[str, type[Credential]],
    *,
    environment: str = DEFAULT_ENVIRONMENT,
) -> ConfigSnapshot:
    root = Path(config_root)
    if not root.is_dir():
        raise ConfigError(
            f"LLM configuration directory not found at '{root}'. "
            "Create it or set LLM_CONFIG_PATH."
        )

    providers: dict[str, ProviderConfig] = {}
    for provider, credential_model in credential_models.items():
        path = root / f"{provider}.yaml"
        if not path.exists():
            logger.warning(
                "provider_config_missing provider=%s path=%s", provider, path
            )
            continue
        try:
            document = load_yaml_dict(path)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigError(f"failed to read '{path}': {exc}") from exc
        providers[provider] = parse_provider_document(
            provider, document, credential_model, source=str(path)
        )

    snapshot = ConfigSnapshot(
        environment=environment or DEFAULT_ENVIRONMENT, providers=providers
    )
    logger.info(
        "config_snapshot_loaded root=%s environment=%s providers=%s",
        root,
        snapshot.environment,
        ",".join(sorted(providers)) or "-",
    )
    return snapshot


class ConfigStore:
    """Holds the current snapshot; reloads publish a new one instead of mutating it."""

    def __init__(
        self,
        loader: Callable[[], ConfigSnapshot],
        *,
        snapshot: ConfigSnapshot | None = None,
    ) -> None:
        self._loader = loader
        self._reload_lock = threading.Lock()
        self._snapshot = snapshot if snapshot is not None else loader()

    @classmethod
    def static(cls, snapshot: ConfigSnapshot) -> ConfigStore:
        return cls(lambda: snapshot, snapshot=snapshot)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        credential_models: Mapping[str, type[Credential]],
    ) -> ConfigStore:
        models = dict(credential_models)
        return cls(
            lambda: load_config_snapshot(
                settings.llm_config_path, models, environment=settings.env
            )
        )

    @property
    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    def reload(self) -> ConfigSnapshot:
        with self._reload_lock:
            snapshot = self._loader()
            self._snapshot = snapshot
        return snapshot


__all__ = [
    "AzureCredential",
    "BedrockCredential",
    "ConfigSnapshot",
    "ConfigStore",
    "Credential",
    "OpenAICompatibleCredential",
    "ProviderConfig",
    "load_config_snapshot",
    "parse_provider_document",
]
