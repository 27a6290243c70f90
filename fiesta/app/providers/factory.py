"""Provider registry.

Maps the provider names used in request paths (``/api/chat/{provider}``) to
adapter instances built from settings.
"""

from enum import Enum
from typing import Dict, List, Optional

import httpx

from fiesta.app.core.config import Settings, settings
from fiesta.app.core.logging import get_logger
from fiesta.app.exceptions import ProviderNotFoundError
from fiesta.app.providers.base import BaseProvider
from fiesta.app.providers.inprocess import InProcessProvider
from fiesta.app.providers.mock import MockChat
from fiesta.app.providers.openai import OpenAICompatibleProvider, OpenRouterProvider

logger = get_logger(__name__)


class ProviderType(str, Enum):
    """Built-in providers."""
    OPENROUTER = "openrouter"
    GEMINI = "gemini"
    MOCK = "mock"


class ProviderRegistry:
    """Name to provider lookup.

    Usage:
        registry = ProviderRegistry()
        registry.register(provider)
        provider = registry.get("openrouter")
    """

    def __init__(self):
        self._providers: Dict[str, BaseProvider] = {}

    def register(self, provider: BaseProvider) -> None:
        if provider.name in self._providers:
            logger.warning(f"Replacing registered provider: {provider.name}")
        self._providers[provider.name] = provider

    def get(self, name: str) -> BaseProvider:
        """Look up a provider by name.

        Raises:
            ProviderNotFoundError: If no provider is registered under ``name``
        """
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        return provider

    def names(self) -> List[str]:
        return list(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)


def build_registry(
    config: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderRegistry:
    """Create the built-in providers from settings.

    HTTP providers are always registered; without a shared key they still
    serve callers who bring their own.
    """
    config = config or settings
    registry = ProviderRegistry()

    registry.register(
        OpenRouterProvider(
            name=ProviderType.OPENROUTER.value,
            base_url=config.openrouter_base_url,
            api_key=config.openrouter_api_key,
            default_model=config.openrouter_default_model,
            http_client=http_client,
            timeout=config.httpx_read_timeout,
            referer=config.openrouter_referer,
            title=config.openrouter_title,
        )
    )
    registry.register(
        OpenAICompatibleProvider(
            name=ProviderType.GEMINI.value,
            base_url=config.gemini_base_url,
            api_key=config.gemini_api_key,
            default_model=config.gemini_default_model,
            http_client=http_client,
            timeout=config.httpx_read_timeout,
        )
    )
    if config.mock_provider_enabled:
        registry.register(InProcessProvider(ProviderType.MOCK.value, MockChat()))

    logger.info(f"Registered providers: {', '.join(registry.names())}")
    return registry


# Global registry instance
_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """Get the global provider registry, building it on first use."""
    global _registry
    if _registry is None:
        from fiesta.app.core.http_client import get_http_client

        try:
            client = get_http_client()
        except RuntimeError:
            client = None
        _registry = build_registry(http_client=client)
    return _registry


def set_provider_registry(registry: Optional[ProviderRegistry]) -> None:
    """Replace the global registry (``None`` rebuilds it on next use)."""
    global _registry
    _registry = registry


def reset_provider_registry() -> None:
    """Reset the global registry (useful for testing)."""
    set_provider_registry(None)
