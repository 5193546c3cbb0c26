"""
Configuration module.

Usage:
    from provider_hub.config import ManagerConfig, ProviderConfig

    manager_config = ManagerConfig(fallback_providers=["openai"])
    groq_config = ProviderConfig(api_key="gsk_...")
"""

from provider_hub.config.settings import (
    ManagerConfig,
    ProviderConfig,
    ProvidersFileConfig,
    load_providers_config,
    parse_providers_config,
)

__all__ = [
    "ManagerConfig",
    "ProviderConfig",
    "ProvidersFileConfig",
    "load_providers_config",
    "parse_providers_config",
]
