from __future__ import annotations

from urllib.parse import quote

import httpx

from open_llm_adapter.backends.openai_compat import (
    OpenAICompatibleAdapter,
    OpenAICompatibleClient,
)
from open_llm_adapter.config import AzureCredential, Credential
from open_llm_adapter.config.settings import Settings
from open_llm_adapter.errors import BackendClientError

DEFAULT_API_VERSION = "2024-06-01"


class AzureOpenAIClient(OpenAICompatibleClient):
    """Azure deployments speak the OpenAI wire format behind a different URL and header."""

    credential: AzureCredential  # type: ignore[assignment]

    @property
    def deployment(self) -> str:
        return self.credential.deployment_id or self.model

    @property
    def endpoint_url(self) -> str:
        api_version = self.credential.api_version or DEFAULT_API_VERSION
        return (
            f"{self.credential.endpoint.rstrip('/')}/openai/deployments/"
            f"{quote(self.deployment, safe='')}/chat/completions"
            f"?api-version={quote(api_version, safe='')}"
        )

    def request_headers(self) -> dict[str, str]:
        return {
            "api-key": self.credential.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }


class AzureOpenAIAdapter(OpenAICompatibleAdapter):
    credential_model = AzureCredential
    client_class = AzureOpenAIClient

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__("azure", settings, transport=transport)

    def validate_credential(self, credential: Credential) -> None:
        if not getattr(credential, "api_key", ""):
            raise BackendClientError(f"azure credential '{credential.name}' has no api_key")
        if not getattr(credential, "endpoint", ""):
            raise BackendClientError(f"azure credential '{credential.name}' has no endpoint")
