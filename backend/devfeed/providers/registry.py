"""
Provider registry.

Providers are registered by name with a factory taking Settings. Selection
walks the registry in preference order and returns the first provider that
reports itself ready.
"""
from typing import Callable, Iterable, Optional

import structlog

from devfeed.config import Settings, get_settings
from devfeed.errors import NoProviderAvailable
from devfeed.providers.anthropic import AnthropicProvider
from devfeed.providers.base import Provider
from devfeed.providers.extractive import ExtractiveProvider
from devfeed.providers.openai import OpenAIProvider

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[Settings], Provider]


class ProviderRegistry:
    """Ordered name -> factory mapping."""

    def __init__(self):
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory

    def names(self) -> list[str]:
        return list(self._factories)

    def create(self, name: str, settings: Optional[Settings] = None) -> Provider:
        if name not in self._factories:
            raise ValueError(f"Unknown provider: {name}. Available: {self.names()}")
        return self._factories[name](settings or get_settings())

    def create_default(
        self,
        settings: Optional[Settings] = None,
        preferred: Optional[str] = None,
    ) -> Provider:
        """
        First ready provider, trying `preferred` (or settings.ai_provider) first.

        Raises:
            NoProviderAvailable: if no registered provider is ready
        """
        settings = settings or get_settings()
        preferred = preferred or settings.ai_provider

        for name in self._ordered(preferred):
            provider = self._factories[name](settings)
            if provider.is_ready():
                logger.debug("AI provider selected", provider=name, model=provider.model)
                return provider

        raise NoProviderAvailable(f"none of {self.names()} is configured")

    def _ordered(self, preferred: Optional[str]) -> Iterable[str]:
        names = self.names()
        if preferred in self._factories:
            names.remove(preferred)
            names.insert(0, preferred)
        return names


def build_default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(
        "anthropic",
        lambda s: AnthropicProvider(api_key=s.anthropic_api_key, model=s.anthropic_model),
    )
    registry.register(
        "openai",
        lambda s: OpenAIProvider(api_key=s.openai_api_key, model=s.openai_model),
    )
    registry.register(
        "extractive",
        lambda s: ExtractiveProvider(enabled=s.extractive_provider_enabled),
    )
    return registry


default_registry = build_default_registry()
