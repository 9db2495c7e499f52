"""AI provider abstraction and built-in backends."""

from typing import Optional

from providers.base import ChatStream, ProviderClient, ProviderDescriptor
from providers.compatible import groq_provider, mistral_provider
from providers.gemini import gemini_provider
from providers.llamaindex import azure_openai_provider, openai_provider
from providers.mock import mock_provider
from providers.registry import ProviderRegistry


def default_providers() -> list[ProviderDescriptor]:
    """Descriptors for every built-in backend."""
    return [
        openai_provider,
        azure_openai_provider,
        groq_provider,
        mistral_provider,
        gemini_provider,
        mock_provider,
    ]


def build_default_registry(call_timeout_seconds: Optional[float] = None) -> ProviderRegistry:
    """Create a ProviderRegistry with all built-in backends registered."""
    registry = ProviderRegistry(call_timeout_seconds=call_timeout_seconds)
    for descriptor in default_providers():
        registry.register(descriptor)
    return registry


__all__ = [
    "ChatStream",
    "ProviderClient",
    "ProviderDescriptor",
    "ProviderRegistry",
    "build_default_registry",
    "default_providers",
]
