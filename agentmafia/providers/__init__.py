"""
Model Providers
===============

Provider-neutral interface plus the Anthropic and OpenAI-compatible adapters.
"""

from agentmafia.providers.base import (
    ImageInput,
    ModelProvider,
    ProviderResponse,
    ToolCall,
    ToolSpec,
    Usage,
)
from agentmafia.providers.anthropic import AnthropicProvider
from agentmafia.providers.openai_compat import KimiProvider, OpenAIProvider
from agentmafia.providers.router import ProviderRegistry, detect_provider_from_model
