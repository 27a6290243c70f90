"""Chat backends for AI Fiesta.

This package provides:
- Base provider interface (BaseProvider, HTTPProvider)
- Provider implementations (OpenAICompatibleProvider, OpenRouterProvider, InProcessProvider)
- Mock in-process backend (MockChat)
- Provider registry (ProviderRegistry, ProviderType)
- Default-model fallback (FallbackPolicy, complete_with_fallback, stream_with_fallback)
"""

from fiesta.app.providers.base import BaseProvider, HTTPProvider, iterate_until_aborted, race_abort
from fiesta.app.providers.factory import (
    ProviderRegistry,
    ProviderType,
    build_registry,
    get_provider_registry,
    reset_provider_registry,
    set_provider_registry,
)
from fiesta.app.providers.inprocess import InProcessProvider
from fiesta.app.providers.mock import MockBackendError, MockChat
from fiesta.app.providers.openai import OpenAICompatibleProvider, OpenRouterProvider
from fiesta.app.providers.retry import (
    FallbackPolicy,
    complete_with_fallback,
    stream_with_fallback,
)

__all__ = [
    # Base
    "BaseProvider",
    "HTTPProvider",
    "iterate_until_aborted",
    "race_abort",
    # Providers
    "InProcessProvider",
    "OpenAICompatibleProvider",
    "OpenRouterProvider",
    "MockBackendError",
    "MockChat",
    # Registry
    "ProviderRegistry",
    "ProviderType",
    "build_registry",
    "get_provider_registry",
    "reset_provider_registry",
    "set_provider_registry",
    # Fallback
    "FallbackPolicy",
    "complete_with_fallback",
    "stream_with_fallback",
]
