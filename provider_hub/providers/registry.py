"""
Model Provider Registry.

Single source of truth for which provider kinds exist and which provider
instances are alive. At most one live instance exists per provider id.

The registry is an ordinary object built by application startup code and
handed to the ProviderManager; there is no process-wide default instance.

Usage:
    from provider_hub.providers import ProviderRegistry, RegistryEvent

    registry = ProviderRegistry()
    registry.register_provider(GroqProvider)

    registry.subscribe(RegistryEvent.STATUS_CHANGED, lambda pid, status: ...)
    groq = await registry.create_provider("groq", ProviderConfig(api_key="gsk_..."))

    # Capability lookup
    descriptor = registry.find_best_provider(streaming=True, local_execution=True)
"""

import asyncio
import logging
from collections.abc import Callable, Hashable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from provider_hub.config.settings import ProviderConfig
from provider_hub.events import EventBus, Subscription
from provider_hub.exceptions import (
    ProviderNotFoundError,
    ProviderRegistrationError,
)
from provider_hub.providers.base import (
    CONTRACT_OPERATIONS,
    ModelProvider,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderEvent,
    ProviderHealth,
    ProviderStatus,
)

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], ModelProvider]


class RegistryEvent(str, Enum):
    """Events emitted by the registry. Every payload starts with the provider id."""

    PROVIDER_REGISTERED = "provider-registered"
    PROVIDER_CREATED = "provider-created"
    PROVIDER_DISPOSED = "provider-disposed"
    PROVIDER_ERROR = "provider-error"
    STATUS_CHANGED = "status-changed"
    CONFIG_UPDATED = "config-updated"
    MODEL_LIST_UPDATED = "model-list-updated"


# Provider events re-emitted by the registry, tagged with the provider id
_FORWARDED_EVENTS = {
    ProviderEvent.STATUS_CHANGED: RegistryEvent.STATUS_CHANGED,
    ProviderEvent.ERROR: RegistryEvent.PROVIDER_ERROR,
    ProviderEvent.CONFIG_UPDATED: RegistryEvent.CONFIG_UPDATED,
    ProviderEvent.MODEL_LIST_UPDATED: RegistryEvent.MODEL_LIST_UPDATED,
}


class ProviderRegistry:
    """Registry of provider kinds and their live instances.

    Kinds are kept in registration order, which is also the order used by
    find_best_provider().
    """

    def __init__(self) -> None:
        self._descriptors: dict[str, ProviderDescriptor] = {}
        self._factories: dict[str, ProviderFactory] = {}
        self._providers: dict[str, ModelProvider] = {}
        self._forwarders: dict[ModelProvider, list[Subscription]] = {}
        self._events = EventBus(owner="registry")

    # =====================
    # Registration
    # =====================

    def register_provider_kind(self, descriptor: ProviderDescriptor, factory: ProviderFactory) -> None:
        """Register a provider kind.

        Args:
            descriptor: Static identity and capabilities of the kind
            factory: Zero-argument callable returning a new, unconfigured instance

        Raises:
            ProviderRegistrationError: If the id is taken or the kind is malformed
        """
        provider_id = getattr(descriptor, "id", None)
        if provider_id in self._descriptors:
            raise ProviderRegistrationError(provider_id, f"Provider {provider_id} is already registered")

        self._validate_kind(descriptor, factory)

        self._descriptors[descriptor.id] = descriptor
        self._factories[descriptor.id] = factory
        logger.info(
            f"Registered provider kind: {descriptor.id} ({descriptor.name})",
            extra={"provider_id": descriptor.id, "event": "provider_registered"},
        )
        self._events.emit(RegistryEvent.PROVIDER_REGISTERED, descriptor.id)

    def register_provider(self, provider_class: type[ModelProvider]) -> None:
        """Register a provider class whose ``descriptor`` is a class attribute."""
        descriptor = getattr(provider_class, "descriptor", None)
        if not isinstance(descriptor, ProviderDescriptor):
            raise ProviderRegistrationError(
                None, f"{provider_class.__name__} does not declare a ProviderDescriptor"
            )
        self.register_provider_kind(descriptor, provider_class)

    def _validate_kind(self, descriptor: ProviderDescriptor, factory: ProviderFactory) -> None:
        if not isinstance(descriptor, ProviderDescriptor):
            raise ProviderRegistrationError(None, "Provider descriptor must be a ProviderDescriptor")
        if not descriptor.id or not descriptor.id.strip():
            raise ProviderRegistrationError(None, "Provider id must not be empty")
        if not descriptor.name or not descriptor.name.strip():
            raise ProviderRegistrationError(descriptor.id, "Provider name must not be empty")
        if not isinstance(descriptor.capabilities, ProviderCapabilities):
            raise ProviderRegistrationError(descriptor.id, "Provider must declare its capabilities")
        if not callable(factory):
            raise ProviderRegistrationError(descriptor.id, "Provider factory must be callable")

        # Probe an unconfigured instance; it holds no resources yet
        try:
            probe = factory()
        except Exception as e:
            raise ProviderRegistrationError(
                descriptor.id, f"Provider factory failed: {e}"
            ) from e

        missing = [name for name in CONTRACT_OPERATIONS if not callable(getattr(probe, name, None))]
        if missing:
            raise ProviderRegistrationError(
                descriptor.id, f"Provider does not implement: {', '.join(missing)}"
            )
        probe_id = getattr(getattr(probe, "descriptor", None), "id", None)
        if probe_id != descriptor.id:
            raise ProviderRegistrationError(
                descriptor.id, f"Factory produced provider {probe_id!r}, expected {descriptor.id!r}"
            )

    # =====================
    # Instances
    # =====================

    async def create_provider(self, provider_id: str, config: ProviderConfig | None = None) -> ModelProvider:
        """Create the instance for ``provider_id``, or re-initialize the existing one.

        Args:
            provider_id: Registered provider id
            config: Configuration to initialize with (None leaves a new
                instance unconfigured)

        Returns:
            The single live instance for ``provider_id``

        Raises:
            ProviderNotFoundError: If the id was never registered
            InvalidConfigError: If ``config`` fails validation
        """
        factory = self._factories.get(provider_id)
        if factory is None:
            raise ProviderNotFoundError(provider_id, f"Provider {provider_id} is not registered")

        existing = self._providers.get(provider_id)
        if existing is not None:
            if config is not None:
                logger.info(f"Re-initializing provider {provider_id}", extra={"provider_id": provider_id})
                await existing.initialize(config)
            return existing

        provider = factory()
        self._forward_events(provider_id, provider)

        if config is not None:
            try:
                await provider.initialize(config)
            except Exception:
                self._stop_forwarding(provider)
                await provider.dispose()
                raise

        # Another task may have created the instance while we were initializing
        existing = self._providers.get(provider_id)
        if existing is not None:
            self._stop_forwarding(provider)
            await provider.dispose()
            if config is not None:
                await existing.initialize(config)
            return existing

        self._providers[provider_id] = provider
        logger.info(
            f"Created provider instance: {provider_id}",
            extra={"provider_id": provider_id, "event": "provider_created"},
        )
        self._events.emit(RegistryEvent.PROVIDER_CREATED, provider_id, provider)
        return provider

    async def reconfigure_provider(self, provider_id: str, **changes: Any) -> ModelProvider:
        """Merge ``changes`` into a live provider's config and re-initialize it.

        Raises:
            ProviderNotFoundError: If no instance exists for ``provider_id``
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id, f"No active instance for provider {provider_id}")
        await provider.configure(**changes)
        return provider

    def get_provider(self, provider_id: str) -> ModelProvider | None:
        return self._providers.get(provider_id)

    def get_active_providers(self) -> dict[str, ModelProvider]:
        """Snapshot of live instances; mutating it does not affect the registry."""
        return dict(self._providers)

    def get_provider_config(self, provider_id: str) -> ProviderConfig | None:
        provider = self._providers.get(provider_id)
        return getattr(provider, "config", None) if provider is not None else None

    def is_provider_registered(self, provider_id: str) -> bool:
        return provider_id in self._descriptors

    def is_provider_ready(self, provider_id: str) -> bool:
        provider = self._providers.get(provider_id)
        return provider is not None and provider.status == ProviderStatus.READY

    async def dispose_provider(self, provider_id: str) -> None:
        """Dispose and remove the instance for ``provider_id``.

        Best-effort: errors are logged and the entry is removed regardless.
        """
        provider = self._providers.pop(provider_id, None)
        if provider is None:
            return

        try:
            await provider.dispose()
        except Exception as e:
            logger.error(
                f"Error disposing provider {provider_id}: {e}",
                extra={"provider_id": provider_id, "event": "dispose_failed"},
            )
        finally:
            self._stop_forwarding(provider)

        logger.info(f"Disposed provider instance: {provider_id}", extra={"provider_id": provider_id})
        self._events.emit(RegistryEvent.PROVIDER_DISPOSED, provider_id)

    # =====================
    # Descriptors
    # =====================

    def get_provider_descriptor(self, provider_id: str) -> ProviderDescriptor | None:
        return self._descriptors.get(provider_id)

    def get_supported_providers(self) -> list[ProviderDescriptor]:
        """Descriptors of every registered kind, in registration order."""
        return list(self._descriptors.values())

    def find_best_provider(self, **requirements: bool) -> ProviderDescriptor | None:
        """First registered kind whose capabilities satisfy ``requirements``.

        Args:
            **requirements: Capability flags, e.g. ``streaming=True``

        Raises:
            ValueError: For unknown capability names
        """
        for descriptor in self._descriptors.values():
            if descriptor.capabilities.satisfies(**requirements):
                return descriptor
        return None

    # =====================
    # Diagnostics
    # =====================

    def get_provider_statuses(self) -> dict[str, ProviderStatus]:
        return {provider_id: provider.status for provider_id, provider in self._providers.items()}

    def get_statistics(self) -> dict[str, Any]:
        """Summary counts for diagnostics."""
        statuses = self.get_provider_statuses()
        return {
            "registered_providers": len(self._descriptors),
            "active_providers": len(self._providers),
            "ready_providers": sum(1 for s in statuses.values() if s == ProviderStatus.READY),
            "error_providers": sum(1 for s in statuses.values() if s == ProviderStatus.ERROR),
            "statuses": {provider_id: status.value for provider_id, status in statuses.items()},
        }

    async def check_all_provider_health(self) -> dict[str, ProviderHealth]:
        """Probe every live instance concurrently.

        A failing probe is captured as an ``error`` health entry for its id
        rather than aborting the batch.
        """
        providers = list(self._providers.items())
        results = await asyncio.gather(
            *(provider.check_health() for _, provider in providers),
            return_exceptions=True,
        )

        health: dict[str, ProviderHealth] = {}
        for (provider_id, _), result in zip(providers, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(f"Health check failed for {provider_id}: {result}")
                health[provider_id] = ProviderHealth(
                    status=ProviderStatus.ERROR,
                    last_checked=datetime.now(UTC),
                    error_message=str(result),
                )
            else:
                health[provider_id] = result
        return health

    # =====================
    # Events and lifecycle
    # =====================

    def subscribe(self, event: Hashable, handler: Callable[..., Any]) -> Subscription:
        return self._events.subscribe(RegistryEvent(event), handler)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self._events.unsubscribe(subscription)

    async def dispose(self) -> None:
        """Dispose every live instance and forget all kinds. Never raises."""
        for provider_id in list(self._providers):
            await self.dispose_provider(provider_id)
        self._descriptors.clear()
        self._factories.clear()
        self._events.clear()
        logger.info("Provider registry disposed")

    def _forward_events(self, provider_id: str, provider: ModelProvider) -> None:
        self._forwarders[provider] = [
            provider.subscribe(provider_event, self._make_forwarder(provider_id, registry_event))
            for provider_event, registry_event in _FORWARDED_EVENTS.items()
        ]

    def _make_forwarder(self, provider_id: str, event: RegistryEvent) -> Callable[..., None]:
        def forward(*args: Any) -> None:
            self._events.emit(event, provider_id, *args)

        return forward

    def _stop_forwarding(self, provider: ModelProvider) -> None:
        for subscription in self._forwarders.pop(provider, []):
            provider.unsubscribe(subscription)
