"""
Provider Router
===============

Selects the provider implementation for an agent.

Usage:
    from agentmafia.providers import ProviderRegistry

    registry = ProviderRegistry()
    provider = registry.get("anthropic")
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Mapping, Optional

from agentmafia.errors import ValidationError
from agentmafia.providers.anthropic import AnthropicProvider
from agentmafia.providers.base import ModelProvider
from agentmafia.providers.openai_compat import KimiProvider, OpenAIProvider

_FACTORIES: Dict[str, Callable[[], ModelProvider]] = {
    "anthropic": AnthropicProvider,
    "kimi": KimiProvider,
    "openai": OpenAIProvider,
}


def detect_provider_from_model(model: str) -> str:
    """Guess the provider id from a model name; defaults to anthropic."""
    if model.startswith("claude-") or "claude" in model:
        return "anthropic"
    if model.startswith(("kimi-", "moonshot-")):
        return "kimi"
    if model.startswith(("gpt-", "o1-", "o3-")):
        return "openai"
    return "anthropic"


class ProviderRegistry:
    """
    Lazily constructed provider instances keyed by provider id.

    Pass ``providers`` to pin specific instances (tests inject scripted
    fakes this way); anything not pinned is built on first use.
    """

    def __init__(self, providers: Optional[Mapping[str, ModelProvider]] = None):
        self._providers: Dict[str, ModelProvider] = dict(providers or {})
        self._lock = threading.Lock()

    def get(self, provider_id: Optional[str], model: Optional[str] = None) -> ModelProvider:
        provider_id = provider_id or detect_provider_from_model(model or "")
        with self._lock:
            provider = self._providers.get(provider_id)
            if provider is None:
                factory = _FACTORIES.get(provider_id)
                if factory is None:
                    raise ValidationError(f"Unknown provider: {provider_id}")
                provider = factory()
                self._providers[provider_id] = provider
            return provider

    def configured(self) -> list[str]:
        """Provider ids that have credentials available."""
        ids = set(_FACTORIES) | set(self._providers)
        return sorted(pid for pid in ids if self.get(pid).is_configured())

    async def aclose(self) -> None:
        with self._lock:
            providers = list(self._providers.values())
        for provider in providers:
            await provider.aclose()
