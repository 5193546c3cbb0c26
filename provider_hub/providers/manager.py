"""
Provider Manager.

High-level service on top of the ProviderRegistry:
- Current-provider selection (the first initialized provider becomes current)
- Per-provider admission control (max concurrent in-flight requests)
- Usage tracking (request count, tokens, cost, latency, error rate)
- Failover, on demand (generate_with_failover) and automatic on provider errors
- Periodic health monitoring

The manager does not own provider instances; disposing it leaves the
registry and its providers untouched.

Usage:
    registry = ProviderRegistry()
    register_default_providers(registry)

    manager = ProviderManager(registry, ManagerConfig(fallback_providers=["openai"]))
    manager.subscribe(ManagerEvent.PROVIDER_SWITCHED, on_switch)

    await manager.initialize_provider("groq", groq_config)
    await manager.initialize_provider("openai", openai_config)

    result = await manager.generate_with_failover(request)
"""

import asyncio
import dataclasses
import logging
import time
from collections.abc import AsyncGenerator, Awaitable, Callable, Hashable
from contextlib import aclosing
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from provider_hub.config.settings import ManagerConfig, ProviderConfig
from provider_hub.events import EventBus, Subscription
from provider_hub.exceptions import (
    AllProvidersFailedError,
    ApiError,
    ProviderError,
    ProviderNotFoundError,
    ProviderNotReadyError,
    RateLimitExceededError,
    UnsupportedOperationError,
)
from provider_hub.providers.base import (
    CostEstimate,
    GenerationRequest,
    GenerationResult,
    Model,
    ModelProvider,
    ProviderDescriptor,
    ProviderHealth,
    ProviderStatus,
    TokenUsage,
    estimate_token_count,
)
from provider_hub.providers.registry import ProviderRegistry, RegistryEvent

logger = logging.getLogger(__name__)


class ManagerEvent(str, Enum):
    """Events emitted by the manager."""

    PROVIDER_SWITCHED = "provider-switched"  # (previous_id, new_id, reason)
    HEALTH_CHECK_COMPLETED = "health-check-completed"  # (results)
    USAGE_UPDATED = "usage-updated"  # (provider_id, stats)
    ERROR = "error"  # (error)


class SwitchReason(str, Enum):
    """Why the current provider changed."""

    MANUAL = "manual"
    FAILOVER = "failover"
    AUTOMATIC_FAILOVER = "automatic-failover"


@dataclass
class UsageStatistics:
    """Running usage figures for one provider id."""

    provider_id: str
    request_count: int = 0
    token_count: int = 0
    total_cost: float = 0.0
    average_latency_ms: float = 0.0
    error_rate: float = 0.0
    last_used: datetime | None = None

    def record(self, latency_ms: float, *, success: bool, tokens: int = 0, cost: float = 0.0) -> None:
        """Fold one completed request into the running figures."""
        # Recover the error count from the previous rate
        errors = round(self.error_rate * self.request_count)
        if not success:
            errors += 1

        self.request_count += 1
        n = self.request_count
        self.average_latency_ms = (self.average_latency_ms * (n - 1) + latency_ms) / n
        self.error_rate = errors / n
        self.token_count += tokens
        self.total_cost += cost
        self.last_used = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "request_count": self.request_count,
            "token_count": self.token_count,
            "total_cost": self.total_cost,
            "average_latency_ms": self.average_latency_ms,
            "error_rate": self.error_rate,
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }


class ProviderManager:
    """Orchestrates the current provider with cross-provider resilience.

    Args:
        registry: Registry that owns the provider instances
        config: Manager policy (defaults to ManagerConfig())
        clock: Monotonic clock in seconds, used to measure request latency
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: ManagerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._config = config or ManagerConfig()
        self._clock = clock
        self._current_id: str | None = None
        self._usage: dict[str, UsageStatistics] = {}
        self._active_requests: dict[str, int] = {}
        self._events = EventBus(owner="manager")
        self._health_task: asyncio.Task | None = None
        self._disposed = False

        self._registry_subscriptions = [
            registry.subscribe(RegistryEvent.PROVIDER_ERROR, self._on_provider_error),
            registry.subscribe(RegistryEvent.STATUS_CHANGED, self._on_status_changed),
        ]

    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # =====================
    # Provider management
    # =====================

    async def initialize_provider(self, provider_id: str, config: ProviderConfig) -> ModelProvider:
        """Create or re-initialize ``provider_id`` through the registry.

        The first successfully initialized provider becomes current.

        Raises:
            ProviderNotFoundError: If the id is not registered
            InvalidConfigError: If ``config`` fails validation
        """
        self._ensure_not_disposed()

        try:
            provider = await self._registry.create_provider(provider_id, config)
        except Exception as e:
            error = e if isinstance(e, ProviderError) else ApiError(
                provider_id, f"Failed to initialize provider: {e}"
            )
            self._events.emit(ManagerEvent.ERROR, error)
            if error is e:
                raise
            raise error from e

        self._usage.setdefault(provider_id, UsageStatistics(provider_id=provider_id))

        if self._current_id is None:
            self._current_id = provider_id
            logger.info(
                f"Current provider set to {provider_id}",
                extra={"provider_id": provider_id, "event": "current_provider_set"},
            )

        self.start_health_monitoring()
        return provider

    async def initialize_from_config(self, providers: dict[str, ProviderConfig]) -> dict[str, Exception]:
        """Initialize every configured provider, the default one first.

        Failures are collected per id instead of aborting the batch.

        Returns:
            Mapping of provider id to the error that prevented initialization
        """
        default_id = self._config.default_provider
        order = sorted(providers, key=lambda provider_id: provider_id != default_id)

        failures: dict[str, Exception] = {}
        for provider_id in order:
            try:
                await self.initialize_provider(provider_id, providers[provider_id])
            except Exception as e:
                logger.error(
                    f"Failed to initialize provider {provider_id}: {e}",
                    extra={"provider_id": provider_id, "event": "initialize_failed"},
                )
                failures[provider_id] = e

        if default_id and self._current_id != default_id and self.is_provider_ready(default_id):
            self.set_current_provider(default_id)

        logger.info(
            f"Initialized {len(order) - len(failures)}/{len(order)} providers "
            f"(current: {self._current_id or 'none'})"
        )
        return failures

    def set_current_provider(self, provider_id: str) -> None:
        """Make ``provider_id`` current.

        Raises:
            ProviderNotFoundError: If the id is not registered
            ProviderNotReadyError: If it is not initialized and ready
        """
        self._ensure_not_disposed()
        if not self._registry.is_provider_registered(provider_id):
            raise ProviderNotFoundError(provider_id, "Provider is not registered")

        provider = self._registry.get_provider(provider_id)
        if provider is None:
            raise ProviderNotReadyError(provider_id, "Provider is not initialized")
        if provider.status != ProviderStatus.READY:
            raise ProviderNotReadyError(
                provider_id, f"Provider is not ready (status: {provider.status.value})"
            )

        if self._current_id != provider_id:
            self._switch_to(provider_id, SwitchReason.MANUAL)

    def get_current_provider(self) -> ModelProvider | None:
        if self._current_id is None:
            return None
        return self._registry.get_provider(self._current_id)

    def get_current_provider_id(self) -> str | None:
        return self._current_id

    def get_available_providers(self) -> list[ProviderDescriptor]:
        return self._registry.get_supported_providers()

    def get_active_providers(self) -> dict[str, ModelProvider]:
        return self._registry.get_active_providers()

    def is_provider_ready(self, provider_id: str) -> bool:
        return self._registry.is_provider_ready(provider_id)

    # =====================
    # Generation
    # =====================

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate with the current provider.

        Raises:
            ProviderNotReadyError: If no provider is current
            RateLimitExceededError: If the concurrency cap is reached (source "admission")
        """
        provider = self._require_current_provider()
        return await self._execute_with_provider(provider, lambda: provider.generate(request))

    async def generate_stream(self, request: GenerationRequest) -> AsyncGenerator[GenerationResult, None]:
        """Stream from the current provider.

        The admission slot is held until the stream finishes or is closed;
        a stream closed before its end counts as a failed request.
        """
        provider = self._require_current_provider()
        provider_id = provider.descriptor.id
        if not provider.descriptor.capabilities.streaming:
            raise UnsupportedOperationError(provider_id, "Current provider does not support streaming")

        self._acquire_slot(provider_id)
        start = self._clock()
        succeeded = False
        usage: TokenUsage | None = None
        model = request.model
        try:
            async with aclosing(provider.generate_stream(request)) as stream:
                async for chunk in stream:
                    if chunk.usage is not None:
                        usage, model = chunk.usage, chunk.model
                    yield chunk
            succeeded = True
        except Exception as e:
            self._emit_error(e, provider_id)
            raise
        finally:
            self._release_slot(provider_id)
            self._record_usage(provider, start, succeeded, usage, model)

    async def generate_with_failover(self, request: GenerationRequest) -> GenerationResult:
        """Generate with the first ready provider in failover order that succeeds.

        Order is the current provider followed by the configured fallbacks,
        deduplicated. Unregistered or not-ready ids are skipped. On success
        with a different provider, it becomes current (reason "failover").

        Raises:
            ProviderError: The last provider's error when every attempt failed
            AllProvidersFailedError: If no candidate was ready
        """
        self._ensure_not_disposed()
        candidates = self._failover_candidates()
        last_error: ProviderError | None = None

        for provider_id in candidates:
            provider = self._registry.get_provider(provider_id)
            if provider is None or not self._registry.is_provider_ready(provider_id):
                logger.debug(f"Skipping provider {provider_id} for failover: not ready")
                continue

            try:
                result = await self._execute_with_provider(
                    provider, lambda p=provider: p.generate(request)
                )
            except ProviderError as e:
                last_error = e
                logger.warning(f"Provider {provider_id} failed, trying next: {e}")
                continue
            except Exception as e:
                last_error = ApiError(provider_id, str(e))
                last_error.__cause__ = e
                logger.warning(f"Provider {provider_id} failed, trying next: {e}")
                continue

            if self._current_id != provider_id:
                self._switch_to(provider_id, SwitchReason.FAILOVER)
            return result

        if last_error is not None:
            raise last_error
        raise AllProvidersFailedError(
            "No ready provider available for failover", attempted=candidates
        )

    # =====================
    # Models, tokens and cost
    # =====================

    async def get_available_models(self) -> list[Model]:
        provider = self._require_current_provider()
        return await provider.get_available_models()

    async def get_all_available_models(self) -> dict[str, list[Model]]:
        """Models of every ready provider; a failing provider lists no models."""
        ready = [
            (provider_id, provider)
            for provider_id, provider in self._registry.get_active_providers().items()
            if provider.status == ProviderStatus.READY
        ]
        results = await asyncio.gather(
            *(provider.get_available_models() for _, provider in ready),
            return_exceptions=True,
        )

        models: dict[str, list[Model]] = {}
        for (provider_id, _), result in zip(ready, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(f"Failed to get models from provider {provider_id}: {result}")
                models[provider_id] = []
            else:
                models[provider_id] = result
        return models

    async def count_tokens(self, text: str, model: str | None = None) -> int:
        """Count tokens with the current provider, estimating when there is none."""
        provider = self.get_current_provider()
        if provider is None:
            return estimate_token_count(text)
        try:
            return await provider.count_tokens(text, model)
        except Exception as e:
            logger.debug(f"Token count failed, using estimate: {e}")
            return estimate_token_count(text)

    def estimate_cost(self, usage: TokenUsage, model: str) -> CostEstimate:
        provider = self.get_current_provider()
        if provider is None:
            return CostEstimate.zero()
        return provider.estimate_cost(usage, model)

    # =====================
    # Health and statistics
    # =====================

    async def check_provider_health(self) -> dict[str, ProviderHealth]:
        """Probe every active provider and emit the consolidated results."""
        results = await self._registry.check_all_provider_health()
        self._events.emit(ManagerEvent.HEALTH_CHECK_COMPLETED, results)
        return results

    def get_provider_statistics(self) -> dict[str, UsageStatistics]:
        """Copies of the usage statistics of every initialized provider."""
        return {provider_id: dataclasses.replace(stats) for provider_id, stats in self._usage.items()}

    def get_provider_usage(self, provider_id: str) -> UsageStatistics | None:
        stats = self._usage.get(provider_id)
        return dataclasses.replace(stats) if stats else None

    def get_active_request_count(self, provider_id: str) -> int:
        return self._active_requests.get(provider_id, 0)

    def start_health_monitoring(self) -> None:
        """Start the periodic health sweep, if enabled and not running.

        Must be called from a running event loop.
        """
        interval = self._config.health_check_interval
        if self._disposed or interval <= 0:
            return
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._health_loop(interval))
        logger.info(f"Started provider health monitoring (every {interval}s)")

    async def stop_health_monitoring(self) -> None:
        if self._health_task is None:
            return
        task, self._health_task = self._health_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped provider health monitoring")

    async def _health_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_provider_health()
            except Exception as e:
                logger.error(f"Health check sweep failed: {e}", exc_info=True)

    # =====================
    # Events and lifecycle
    # =====================

    def subscribe(self, event: Hashable, handler: Callable[..., Any]) -> Subscription:
        return self._events.subscribe(ManagerEvent(event), handler)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self._events.unsubscribe(subscription)

    async def dispose(self) -> None:
        """Stop monitoring and drop all manager state. Never raises.

        The registry and its provider instances are left untouched.
        """
        if self._disposed:
            return
        self._disposed = True

        await self.stop_health_monitoring()
        for subscription in self._registry_subscriptions:
            self._registry.unsubscribe(subscription)
        self._registry_subscriptions = []

        self._usage.clear()
        self._active_requests.clear()
        self._current_id = None
        self._events.clear()
        logger.info("Provider manager disposed")

    # =====================
    # Internals
    # =====================

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise ProviderNotReadyError(None, "Provider manager has been disposed")

    def _require_current_provider(self) -> ModelProvider:
        self._ensure_not_disposed()
        provider = self.get_current_provider()
        if provider is None:
            raise ProviderNotReadyError(
                self._current_id,
                "No provider is currently active",
                user_message="Please configure a provider first.",
            )
        return provider

    def _failover_candidates(self, exclude: str | None = None) -> list[str]:
        candidates = [self._current_id, *self._config.fallback_providers]
        ordered = list(dict.fromkeys(c for c in candidates if c))
        return [provider_id for provider_id in ordered if provider_id != exclude]

    def _switch_to(self, provider_id: str, reason: SwitchReason) -> None:
        previous = self._current_id
        self._current_id = provider_id
        logger.info(
            f"Switched provider {previous or 'none'} -> {provider_id} ({reason.value})",
            extra={"provider_id": provider_id, "event": "provider_switched", "reason": reason.value},
        )
        self._events.emit(ManagerEvent.PROVIDER_SWITCHED, previous, provider_id, reason)

    def _acquire_slot(self, provider_id: str) -> None:
        active = self._active_requests.get(provider_id, 0)
        if active >= self._config.max_concurrent_requests:
            raise RateLimitExceededError(
                provider_id,
                "Maximum concurrent requests exceeded",
                source=RateLimitExceededError.ADMISSION,
            )
        self._active_requests[provider_id] = active + 1

    def _release_slot(self, provider_id: str) -> None:
        remaining = self._active_requests.get(provider_id, 0) - 1
        if remaining <= 0:
            self._active_requests.pop(provider_id, None)
        else:
            self._active_requests[provider_id] = remaining

    async def _execute_with_provider(
        self, provider: ModelProvider, operation: Callable[[], Awaitable[GenerationResult]]
    ) -> GenerationResult:
        provider_id = provider.descriptor.id
        self._acquire_slot(provider_id)
        start = self._clock()
        result: GenerationResult | None = None
        try:
            result = await operation()
            return result
        except Exception as e:
            self._emit_error(e, provider_id)
            raise
        finally:
            self._release_slot(provider_id)
            # Cancellation leaves result unset and is recorded as a failure
            self._record_usage(
                provider,
                start,
                result is not None,
                result.usage if result else None,
                result.model if result else None,
            )

    def _record_usage(
        self,
        provider: ModelProvider,
        start: float,
        success: bool,
        usage: TokenUsage | None,
        model: str | None,
    ) -> None:
        if self._disposed:
            return
        provider_id = provider.descriptor.id
        latency_ms = (self._clock() - start) * 1000

        tokens = 0
        cost = 0.0
        if success and usage is not None and model:
            tokens = usage.total_tokens
            cost = provider.estimate_cost(usage, model).total_cost

        stats = self._usage.setdefault(provider_id, UsageStatistics(provider_id=provider_id))
        stats.record(latency_ms, success=success, tokens=tokens, cost=cost)
        self._events.emit(ManagerEvent.USAGE_UPDATED, provider_id, dataclasses.replace(stats))

    def _emit_error(self, error: Exception, provider_id: str) -> None:
        if not isinstance(error, ProviderError):
            error = ApiError(provider_id, str(error))
        self._events.emit(ManagerEvent.ERROR, error)

    def _on_status_changed(self, provider_id: str, status: ProviderStatus) -> None:
        if status == ProviderStatus.ERROR and provider_id == self._current_id:
            self._handle_provider_failure(provider_id)

    def _on_provider_error(self, provider_id: str, error: ProviderError) -> None:
        if provider_id != self._current_id:
            return
        # Only errors that left the provider unusable trigger failover
        provider = self._registry.get_provider(provider_id)
        if provider is not None and provider.status == ProviderStatus.ERROR:
            self._handle_provider_failure(provider_id)

    def _handle_provider_failure(self, provider_id: str) -> None:
        if self._disposed or not self._config.enable_auto_failover:
            return

        for candidate in self._failover_candidates(exclude=provider_id):
            if self._registry.is_provider_ready(candidate):
                self._switch_to(candidate, SwitchReason.AUTOMATIC_FAILOVER)
                return

        logger.warning(
            f"No healthy fallback provider available for {provider_id}",
            extra={"provider_id": provider_id, "event": "failover_unavailable"},
        )
