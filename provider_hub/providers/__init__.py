"""
Model Provider Abstraction Layer.

A stable interface over LLM vendors, so application code can swap or fail
over between backends (Groq, OpenAI, a local mock) without changing.

Architecture:
    Application Layer
         ↓
    ProviderManager (current provider, failover, usage, health)
         ↓
    ProviderRegistry (provider kinds and live instances)
         ↓
    ModelProvider / BaseProvider adapters
         ↓
    LLM APIs

Usage:
    from provider_hub.providers import ProviderManager, ProviderRegistry, register_default_providers

    registry = ProviderRegistry()
    register_default_providers(registry)
    manager = ProviderManager(registry)

    await manager.initialize_provider("groq", ProviderConfig(api_key="gsk_..."))
    result = await manager.generate(request)
"""

from provider_hub.providers.base import (
    BaseProvider,
    ConfigValidationResult,
    CostEstimate,
    FinishReason,
    GenerationRequest,
    GenerationResult,
    Message,
    Model,
    ModelProvider,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderEvent,
    ProviderHealth,
    ProviderStatus,
    TokenUsage,
)
from provider_hub.providers.defaults import build_provider_stack, register_default_providers
from provider_hub.providers.manager import ManagerEvent, ProviderManager, SwitchReason, UsageStatistics
from provider_hub.providers.mock import MockProvider
from provider_hub.providers.openai_compat import GroqProvider, OpenAICompatibleProvider, OpenAIProvider
from provider_hub.providers.registry import ProviderRegistry, RegistryEvent

__all__ = [
    "BaseProvider",
    "ConfigValidationResult",
    "CostEstimate",
    "FinishReason",
    "GenerationRequest",
    "GenerationResult",
    "GroqProvider",
    "ManagerEvent",
    "Message",
    "MockProvider",
    "Model",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "ProviderCapabilities",
    "ProviderDescriptor",
    "ProviderEvent",
    "ProviderHealth",
    "ProviderManager",
    "ProviderRegistry",
    "ProviderStatus",
    "RegistryEvent",
    "SwitchReason",
    "TokenUsage",
    "UsageStatistics",
    "build_provider_stack",
    "register_default_providers",
]
