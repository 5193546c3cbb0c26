"""provider-hub - multi-provider LLM abstraction and runtime management.

Use explicit imports, e.g. ``from provider_hub.providers import ProviderManager``.
"""

__version__ = "0.1.0"
