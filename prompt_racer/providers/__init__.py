"""
Provider adapters for Prompt Racer.

One adapter per provider family, all sharing the ProviderAdapter contract.
"""

from typing import Dict

from prompt_racer.config.loader import RacerSettings
from prompt_racer.core.registry import ProviderFamily

from .anthropic_adapter import AnthropicAdapter
from .base import ProviderAdapter
from .google_adapter import GoogleAdapter
from .openai_adapter import OpenAIAdapter, XAIAdapter


def build_adapters(settings: RacerSettings) -> Dict[ProviderFamily, ProviderAdapter]:
    """Create one adapter per provider family from configured API keys."""
    return {
        ProviderFamily.OPENAI: OpenAIAdapter(api_key=settings.provider_key("openai")),
        ProviderFamily.ANTHROPIC: AnthropicAdapter(api_key=settings.provider_key("anthropic")),
        ProviderFamily.GOOGLE: GoogleAdapter(api_key=settings.provider_key("google")),
        ProviderFamily.XAI: XAIAdapter(api_key=settings.provider_key("xai")),
    }


__all__ = [
    "AnthropicAdapter",
    "GoogleAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "XAIAdapter",
    "build_adapters",
]
