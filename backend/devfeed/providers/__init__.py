"""
AI providers for item enrichment.
"""
from devfeed.providers.anthropic import AnthropicProvider
from devfeed.providers.base import LLMProvider, Provider
from devfeed.providers.extractive import ExtractiveProvider
from devfeed.providers.openai import OpenAIProvider
from devfeed.providers.registry import (
    ProviderRegistry,
    default_registry,
)

__all__ = [
    "AnthropicProvider",
    "ExtractiveProvider",
    "LLMProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderRegistry",
    "default_registry",
]
