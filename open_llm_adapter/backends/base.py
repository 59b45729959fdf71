from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from typing import Protocol

from open_llm_adapter.config import Credential
from open_llm_adapter.config.settings import Settings
from open_llm_adapter.errors import UnsupportedProviderError
from open_llm_adapter.schemas import ChatCompletionChoice, ChatRequest
from open_llm_adapter.translation.messages import MessageTranslator
from open_llm_adapter.translation.types import NO_TOOLS, BackendMessage, ToolBinding

logger = logging.getLogger("uvicorn.error")


class BackendStream(Protocol):
    """Async iterator of provider-neutral messages owning a backend connection."""

    def __aiter__(self) -> AsyncIterator[BackendMessage]: ...

    async def aclose(self) -> None: ...


class BackendClient(ABC):
    """One configured connection to a backend, built per request."""

    def __init__(
        self,
        *,
        provider: str,
        credential: Credential,
        model: str,
        translator: MessageTranslator,
    ) -> None:
        self.provider = provider
        self.credential = credential
        self.model = model
        self.translator = translator
        self.tool_binding: ToolBinding = NO_TOOLS

    def bind_tools(self, binding: ToolBinding) -> None:
        """Attach tools for the next call; backends may reject the binding."""
        self.tool_binding = binding

    async def translate_outbound(self, request: ChatRequest) -> list[BackendMessage]:
        return await self.translator.to_backend_messages(request)

    def translate_inbound(
        self, message: BackendMessage, index: int = 0
    ) -> ChatCompletionChoice:
        return self.translator.from_backend_message(message, index=index)

    @abstractmethod
    async def generate(
        self, request: ChatRequest, messages: list[BackendMessage]
    ) -> BackendMessage: ...

    @abstractmethod
    async def open_stream(
        self, request: ChatRequest, messages: list[BackendMessage]
    ) -> BackendStream: ...

    async def aclose(self) -> None:
        return None


class BackendAdapter(ABC):
    provider: str
    credential_model: type[Credential]

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def timeout_seconds(self, credential: Credential) -> float:
        return credential.timeout_seconds(self.settings.backend_timeout_seconds)

    @abstractmethod
    def build_client(
        self,
        credential: Credential,
        *,
        model: str,
        translator: MessageTranslator,
    ) -> BackendClient: ...


class AdapterRegistry:
    def __init__(self, adapters: Iterable[BackendAdapter] = ()) -> None:
        self._adapters: dict[str, BackendAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: BackendAdapter) -> None:
        provider = adapter.provider.strip().lower()
        if provider in self._adapters:
            logger.warning("backend_adapter_replaced provider=%s", provider)
        self._adapters[provider] = adapter

    def get(self, provider: str) -> BackendAdapter:
        adapter = self._adapters.get((provider or "").strip().lower())
        if adapter is None:
            raise UnsupportedProviderError(provider, supported=self.providers())
        return adapter

    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def credential_models(self) -> dict[str, type[Credential]]:
        return {
            provider: adapter.credential_model
            for provider, adapter in sorted(self._adapters.items())
        }
