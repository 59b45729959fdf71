from __future__ import annotations

from open_llm_adapter.backends.azure import AzureOpenAIAdapter
from open_llm_adapter.backends.base import AdapterRegistry
from open_llm_adapter.backends.bedrock import BedrockAdapter
from open_llm_adapter.backends.openai_compat import OpenAICompatibleAdapter
from open_llm_adapter.config.settings import Settings


def build_default_registry(settings: Settings) -> AdapterRegistry:
    registry = AdapterRegistry([AzureOpenAIAdapter(settings), BedrockAdapter(settings)])
    for provider in settings.openai_compatible_providers_list:
        registry.register(OpenAICompatibleAdapter(provider, settings))
    return registry
