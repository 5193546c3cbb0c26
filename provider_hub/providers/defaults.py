"""
Startup wiring for the built-in provider kinds.

Usage:
    settings = load_providers_config(Path("providers.yaml"))
    registry, manager = build_provider_stack(settings)
    failures = await manager.initialize_from_config(settings.providers)
"""

import logging

from provider_hub.config.settings import ProvidersFileConfig
from provider_hub.exceptions import ProviderNotFoundError
from provider_hub.providers.manager import ProviderManager
from provider_hub.providers.mock import MockProvider
from provider_hub.providers.openai_compat import GroqProvider, OpenAIProvider
from provider_hub.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

BUILTIN_PROVIDERS = (GroqProvider, OpenAIProvider, MockProvider)


def register_default_providers(registry: ProviderRegistry) -> None:
    """Register every built-in provider kind that is not registered yet."""
    for provider_class in BUILTIN_PROVIDERS:
        if registry.is_provider_registered(provider_class.descriptor.id):
            logger.debug(f"Provider kind {provider_class.descriptor.id} already registered, skipping")
            continue
        registry.register_provider(provider_class)


def build_provider_stack(
    settings: ProvidersFileConfig | None = None,
) -> tuple[ProviderRegistry, ProviderManager]:
    """Create a registry with the built-in kinds and a manager using ``settings``.

    Providers are not initialized here; call
    ``manager.initialize_from_config(settings.providers)`` from a running loop.

    Raises:
        ProviderNotFoundError: If the settings reference an unknown provider id
    """
    settings = settings or ProvidersFileConfig()
    registry = ProviderRegistry()
    register_default_providers(registry)

    referenced = [*settings.providers, *settings.manager.fallback_providers]
    if settings.manager.default_provider:
        referenced.append(settings.manager.default_provider)
    unknown = sorted({provider_id for provider_id in referenced if not registry.is_provider_registered(provider_id)})
    if unknown:
        raise ProviderNotFoundError(unknown[0], f"Unknown provider ids in configuration: {', '.join(unknown)}")

    manager = ProviderManager(registry, settings.manager)
    logger.info(f"Provider stack ready with {len(registry.get_supported_providers())} provider kinds")
    return registry, manager
