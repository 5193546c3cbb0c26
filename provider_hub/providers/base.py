"""
Base classes for Model Providers.

This module defines the contract every provider adapter satisfies
(ModelProvider) and the shared behaviour adapters build on (BaseProvider):

- Lifecycle state machine:
    disconnected -> configuring -> ready <-> error
    ready -> rate_limited (vendor 429) -> ready (next successful call)
    any -> disconnected on dispose()
- Config and request validation
- Retry with exponential backoff (tenacity)
- Error wrapping into the provider_hub.exceptions hierarchy
- Event notifications through a composed EventBus

Adapters only translate requests and responses; they implement the ``do_*``
hooks and never touch the state machine directly.
"""

import asyncio
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable, Hashable
from contextlib import aclosing
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Literal, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from provider_hub.config.settings import DEFAULT_MAX_RETRIES, ProviderConfig
from provider_hub.events import EventBus, Subscription
from provider_hub.exceptions import (
    ApiError,
    InvalidConfigError,
    NetworkConnectionError,
    NetworkTimeoutError,
    ProviderError,
    ProviderNotReadyError,
    RateLimitExceededError,
    RequestValidationError,
    UnsupportedOperationError,
    is_retryable_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CURRENCY = "USD"
MIN_TIMEOUT_SECONDS = 1.0
MAX_TIMEOUT_SECONDS = 300.0
MAX_RETRIES_LIMIT = 10


class ProviderStatus(str, Enum):
    """Lifecycle state of a provider instance."""

    READY = "ready"
    CONFIGURING = "configuring"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    RATE_LIMITED = "rate_limited"


class FinishReason(str, Enum):
    """Why a generation stopped."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"
    FUNCTION_CALL = "function_call"

    @classmethod
    def from_vendor(cls, value: str | None) -> "FinishReason | None":
        """Map a vendor's finish/stop reason onto the fixed enumeration."""
        if not value:
            return None
        aliases = {
            "end_turn": cls.STOP,
            "stop_sequence": cls.STOP,
            "max_tokens": cls.LENGTH,
            "tool_calls": cls.FUNCTION_CALL,
            "tool_use": cls.FUNCTION_CALL,
            "safety": cls.CONTENT_FILTER,
        }
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            return None


class ProviderEvent(str, Enum):
    """Events emitted by a provider instance."""

    STATUS_CHANGED = "status-changed"
    ERROR = "error"
    CONFIG_UPDATED = "config-updated"
    MODEL_LIST_UPDATED = "model-list-updated"


@dataclass(frozen=True)
class ProviderCapabilities:
    """Optional features a provider kind supports.

    Used by the registry to find a provider for a set of requirements.
    """

    streaming: bool = False
    function_calling: bool = False
    local_execution: bool = False
    custom_endpoints: bool = False
    image_input: bool = False

    def satisfies(self, **requirements: bool) -> bool:
        """Check every requested flag is supported.

        Args:
            **requirements: Capability names mapped to whether they are required

        Raises:
            ValueError: For unknown capability names
        """
        known = {f.name for f in fields(self)}
        unknown = set(requirements) - known
        if unknown:
            raise ValueError(f"Unknown capabilities: {', '.join(sorted(unknown))}")
        return all(getattr(self, name) for name, required in requirements.items() if required)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static identity of a provider kind. Defined once per kind."""

    id: str
    name: str
    capabilities: ProviderCapabilities
    description: str = ""
    website: str | None = None
    requires_api_key: bool = True


@dataclass
class Model:
    """A model offered by a provider. Pricing is per 1K tokens."""

    id: str
    name: str
    context_length: int
    input_pricing: float
    output_pricing: float
    currency: str = DEFAULT_CURRENCY
    description: str | None = None
    is_local: bool = False
    is_installed: bool = False


@dataclass
class Message:
    """One role-tagged conversation message."""

    role: Literal["system", "user", "assistant"]
    content: str
    name: str | None = None


@dataclass
class GenerationRequest:
    """Provider-independent generation request."""

    messages: list[Message]
    model: str
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    system_prompt: str | None = None


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting reported by a vendor."""

    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used."""
        return self.prompt_tokens + self.completion_tokens


@dataclass
class GenerationResult:
    """A generation result, or one chunk of a streamed generation.

    ``usage`` is None when the vendor did not report it; a zero count is a
    real vendor value and is kept as such.
    """

    content: str
    model: str
    provider_id: str
    usage: TokenUsage | None = None
    finish_reason: FinishReason | None = None
    tokens: int = 0
    id: str = field(default_factory=lambda: f"gen_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "content": self.content,
            "model": self.model,
            "provider_id": self.provider_id,
            "tokens": self.tokens,
            "finish_reason": self.finish_reason.value if self.finish_reason else None,
            "usage": (
                {
                    "prompt_tokens": self.usage.prompt_tokens,
                    "completion_tokens": self.usage.completion_tokens,
                    "total_tokens": self.usage.total_tokens,
                }
                if self.usage
                else None
            ),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CostEstimate:
    """Estimated cost of a token usage on a given model."""

    input_cost: float
    output_cost: float
    total_cost: float
    currency: str = DEFAULT_CURRENCY
    breakdown: dict[str, float] | None = None

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> "CostEstimate":
        """Zero-valued estimate, used for unknown models."""
        return cls(input_cost=0.0, output_cost=0.0, total_cost=0.0, currency=currency)


@dataclass
class ProviderHealth:
    """Result of one health probe."""

    status: ProviderStatus
    last_checked: datetime
    latency_ms: float | None = None
    error_message: str | None = None


@dataclass
class ConfigValidationResult:
    """Outcome of validating a ProviderConfig."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def estimate_token_count(text: str) -> int:
    """Length-based fallback: roughly 4 characters per token."""
    return math.ceil(len(text) / 4)


def estimate_cost_from_models(
    models: list[Model],
    usage: TokenUsage,
    model_id: str,
    default_currency: str = DEFAULT_CURRENCY,
) -> CostEstimate:
    """Price ``usage`` against a static model catalog.

    Unknown model ids cost nothing rather than failing.
    """
    model = next((m for m in models if m.id == model_id), None)
    if model is None:
        return CostEstimate.zero(default_currency)

    input_cost = usage.prompt_tokens / 1000 * model.input_pricing
    output_cost = usage.completion_tokens / 1000 * model.output_pricing
    return CostEstimate(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
        currency=model.currency,
        breakdown={
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "input_rate": model.input_pricing,
            "output_rate": model.output_pricing,
        },
    )


class ModelProvider(ABC):
    """Abstract contract for model providers.

    The registry and manager rely only on these operations. Implementations
    normally extend BaseProvider rather than this class directly.

    Example:
        class AcmeProvider(BaseProvider):
            descriptor = ProviderDescriptor(
                id="acme",
                name="Acme AI",
                capabilities=ProviderCapabilities(streaming=True),
            )

            async def do_generate(self, request):
                ...

        registry.register_provider(AcmeProvider)
        provider = await registry.create_provider("acme", ProviderConfig(api_key="..."))
    """

    @property
    @abstractmethod
    def descriptor(self) -> ProviderDescriptor:
        """Static identity and capabilities of this provider kind."""

    @property
    @abstractmethod
    def status(self) -> ProviderStatus:
        """Current lifecycle state."""

    def get_status(self) -> ProviderStatus:
        """Current lifecycle state."""
        return self.status

    @abstractmethod
    async def initialize(self, config: ProviderConfig) -> None:
        """Validate ``config`` and connect.

        Raises:
            InvalidConfigError: If validation fails
            NetworkTimeoutError, NetworkConnectionError, ApiError: If connecting fails
        """

    @abstractmethod
    async def configure(self, **changes: Any) -> None:
        """Merge ``changes`` into the current config and re-initialize."""

    @abstractmethod
    async def get_available_models(self) -> list[Model]:
        """List models, in the vendor's order."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate a complete response.

        Raises:
            ProviderNotReadyError: If not initialized
            ApiError: On vendor failure
        """

    @abstractmethod
    def generate_stream(self, request: GenerationRequest) -> AsyncGenerator[GenerationResult, None]:
        """Stream partial results. Finite and not restartable.

        Raises:
            UnsupportedOperationError: If the streaming capability is unset
        """

    @abstractmethod
    async def count_tokens(self, text: str, model: str | None = None) -> int:
        """Best-effort token count. Never raises."""

    @abstractmethod
    def estimate_cost(self, usage: TokenUsage, model_id: str) -> CostEstimate:
        """Pure cost estimate. Zero for unknown models, never raises."""

    @abstractmethod
    async def check_health(self) -> ProviderHealth:
        """Probe the vendor and report status plus latency."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release credentials and resources. Idempotent, never raises."""

    @abstractmethod
    def subscribe(self, event: ProviderEvent, handler: Callable[..., Any]) -> Subscription:
        """Subscribe to a provider event."""

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> bool:
        """Cancel a subscription."""


# Operations a provider must expose to be registrable
CONTRACT_OPERATIONS = (
    "initialize",
    "configure",
    "get_available_models",
    "generate",
    "generate_stream",
    "count_tokens",
    "estimate_cost",
    "check_health",
    "dispose",
    "subscribe",
    "unsubscribe",
)


class BaseProvider(ModelProvider):
    """Shared provider behaviour.

    Subclasses set the ``descriptor`` class attribute and implement:
    do_initialize, do_get_available_models, do_generate, do_generate_stream,
    do_health_check, and optionally do_count_tokens, do_estimate_cost,
    do_dispose and validate_provider_config.
    """

    descriptor: ProviderDescriptor

    default_currency = DEFAULT_CURRENCY
    max_retries = DEFAULT_MAX_RETRIES
    base_retry_delay = 1.0  # seconds
    max_retry_delay = 30.0  # seconds
    token_count_timeout = 5.0  # seconds

    def __init__(self) -> None:
        self._events = EventBus(owner=self.descriptor.id)
        self._config: ProviderConfig | None = None
        self._status = ProviderStatus.DISCONNECTED
        self._initialized = False
        self._disposed = False
        self._models: list[Model] | None = None
        self.last_health_check: datetime | None = None
        self.last_latency_ms: float | None = None

    @property
    def id(self) -> str:
        """Provider id (shortcut for descriptor.id)."""
        return self.descriptor.id

    @property
    def status(self) -> ProviderStatus:
        """Current lifecycle state."""
        return self._status

    @property
    def config(self) -> ProviderConfig | None:
        """Configuration the provider was last initialized with."""
        return self._config

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # =====================
    # Configuration
    # =====================

    async def initialize(self, config: ProviderConfig) -> None:
        """Validate ``config``, run provider-specific setup, become ready."""
        self._ensure_not_disposed()
        self._set_status(ProviderStatus.CONFIGURING)

        try:
            validation = await self.validate_config(config)
            if not validation.is_valid:
                raise InvalidConfigError(
                    self.id,
                    f"Configuration validation failed: {', '.join(validation.errors)}",
                    errors=validation.errors,
                    user_message="Please check your provider configuration settings.",
                )
            for warning in validation.warnings:
                logger.warning(f"Provider {self.id} config warning: {warning}")

            self._initialized = False
            self._config = config
            await self.do_initialize(config)
        except Exception as e:
            self._initialized = False
            self._set_status(ProviderStatus.ERROR)
            wrapped = self.wrap_error(e, "Failed to initialize provider")
            self._events.emit(ProviderEvent.ERROR, wrapped)
            if wrapped is e:
                raise
            raise wrapped from e

        self._initialized = True
        self._set_status(ProviderStatus.READY)
        self._events.emit(ProviderEvent.CONFIG_UPDATED, config)

    async def configure(self, **changes: Any) -> None:
        """Merge ``changes`` into the current config and re-initialize."""
        self._ensure_not_disposed()
        if self._config is None:
            raise ProviderNotReadyError(
                self.id, "Provider must be initialized before configuration updates"
            )
        try:
            new_config = self._config.merged(**changes)
        except ValueError as e:
            raise InvalidConfigError(self.id, f"Invalid configuration update: {e}") from e
        await self.initialize(new_config)

    async def validate_config(self, config: ProviderConfig) -> ConfigValidationResult:
        """Check generic constraints, then the provider-specific hook."""
        errors: list[str] = []
        warnings: list[str] = []

        if self.descriptor.requires_api_key and not config.credential.strip():
            errors.append("API key is required for this provider")

        if not MIN_TIMEOUT_SECONDS <= config.timeout <= MAX_TIMEOUT_SECONDS:
            errors.append("Timeout must be between 1 second and 5 minutes")

        if not 0 <= config.max_retries <= MAX_RETRIES_LIMIT:
            warnings.append(f"Max retries should be between 0 and {MAX_RETRIES_LIMIT}")

        if config.endpoint is not None:
            if not self.descriptor.capabilities.custom_endpoints:
                errors.append("This provider does not support custom endpoints")
            elif not config.endpoint.startswith(("http://", "https://")):
                errors.append("Invalid endpoint URL format")

        provider_validation = await self.validate_provider_config(config)
        errors.extend(provider_validation.errors)
        warnings.extend(provider_validation.warnings)

        return ConfigValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    # =====================
    # Models
    # =====================

    async def get_available_models(self) -> list[Model]:
        self._ensure_ready()
        models = await self.do_get_available_models()
        if models != self._models:
            self._models = list(models)
            self._events.emit(ProviderEvent.MODEL_LIST_UPDATED, list(models))
        return list(models)

    async def get_model(self, model_id: str) -> Model | None:
        """Look up one model by id, None if unknown or listing fails."""
        try:
            models = await self.get_available_models()
        except Exception as e:
            self._events.emit(ProviderEvent.ERROR, self.wrap_error(e, f"Failed to get model: {model_id}"))
            return None
        return next((m for m in models if m.id == model_id), None)

    # =====================
    # Generation
    # =====================

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self._ensure_ready()

        try:
            self.validate_request(request)
            result = await self.do_generate(request)
        except Exception as e:
            wrapped = self._record_failure(e, "Generation failed")
            if wrapped is e:
                raise
            raise wrapped from e

        self._record_success()
        return result

    async def generate_stream(self, request: GenerationRequest) -> AsyncGenerator[GenerationResult, None]:
        self._ensure_ready()
        if not self.descriptor.capabilities.streaming:
            raise UnsupportedOperationError(
                self.id,
                "Streaming is not supported by this provider",
                user_message="Please use non-streaming generation for this provider.",
            )

        try:
            self.validate_request(request)
            async with aclosing(self.do_generate_stream(request)) as stream:
                async for chunk in stream:
                    yield chunk
        except Exception as e:
            wrapped = self._record_failure(e, "Streaming generation failed")
            if wrapped is e:
                raise
            raise wrapped from e

        self._record_success()

    def validate_request(self, request: GenerationRequest) -> None:
        """Reject malformed requests before any network I/O."""
        if not request.messages:
            raise RequestValidationError(self.id, "Messages are required for generation")
        if not request.model:
            raise RequestValidationError(self.id, "Model is required for generation")
        if request.temperature is not None and not 0 <= request.temperature <= 2:
            raise RequestValidationError(self.id, "Temperature must be between 0 and 2")
        if request.max_tokens is not None and request.max_tokens < 1:
            raise RequestValidationError(self.id, "Max tokens must be positive")

    # =====================
    # Tokens and cost
    # =====================

    async def count_tokens(self, text: str, model: str | None = None) -> int:
        if not text:
            return 0
        try:
            count = await asyncio.wait_for(
                self.do_count_tokens(text, model), timeout=self.token_count_timeout
            )
            return max(0, int(count))
        except Exception as e:
            logger.debug(f"Provider {self.id} token count fell back to estimate: {e}")
            return estimate_token_count(text)

    def estimate_cost(self, usage: TokenUsage, model_id: str) -> CostEstimate:
        try:
            return self.do_estimate_cost(usage, model_id)
        except Exception as e:
            logger.warning(f"Provider {self.id} cost estimation failed for {model_id}: {e}")
            return CostEstimate.zero(self.default_currency)

    # =====================
    # Health and lifecycle
    # =====================

    async def check_health(self) -> ProviderHealth:
        now = datetime.now(UTC)
        if self._disposed or not self._initialized:
            return ProviderHealth(
                status=self._status,
                last_checked=now,
                error_message="Provider is not initialized",
            )

        start = time.monotonic()
        try:
            await self.do_health_check()
        except Exception as e:
            logger.warning(f"Provider {self.id} health check failed: {e}")
            self._set_status(ProviderStatus.ERROR)
            return ProviderHealth(status=ProviderStatus.ERROR, last_checked=now, error_message=str(e))

        latency_ms = (time.monotonic() - start) * 1000
        self.last_health_check = now
        self.last_latency_ms = latency_ms
        if self._status in (ProviderStatus.ERROR, ProviderStatus.RATE_LIMITED):
            self._set_status(ProviderStatus.READY)
        return ProviderHealth(status=self._status, last_checked=now, latency_ms=latency_ms)

    async def dispose(self) -> None:
        if self._disposed:
            return

        try:
            await self.do_dispose()
        except Exception as e:
            logger.error(f"Error disposing provider {self.id}: {e}")
            self._events.emit(ProviderEvent.ERROR, self.wrap_error(e, "Dispose failed"))

        self._config = None
        self._initialized = False
        self._disposed = True
        self._models = None
        self._set_status(ProviderStatus.DISCONNECTED)
        self._events.clear()

    # =====================
    # Events
    # =====================

    def subscribe(self, event: Hashable, handler: Callable[..., Any]) -> Subscription:
        return self._events.subscribe(ProviderEvent(event), handler)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self._events.unsubscribe(subscription)

    # =====================
    # Hooks for concrete providers
    # =====================

    @abstractmethod
    async def do_initialize(self, config: ProviderConfig) -> None:
        """Provider-specific setup (create clients, test the connection)."""

    @abstractmethod
    async def do_get_available_models(self) -> list[Model]:
        """Return the vendor's model catalog."""

    @abstractmethod
    async def do_generate(self, request: GenerationRequest) -> GenerationResult:
        """Call the vendor for a complete response."""

    @abstractmethod
    def do_generate_stream(self, request: GenerationRequest) -> AsyncGenerator[GenerationResult, None]:
        """Call the vendor's streaming endpoint."""

    @abstractmethod
    async def do_health_check(self) -> None:
        """Raise if the vendor is unreachable."""

    async def do_count_tokens(self, text: str, model: str | None = None) -> int:
        return estimate_token_count(text)

    def do_estimate_cost(self, usage: TokenUsage, model_id: str) -> CostEstimate:
        return estimate_cost_from_models(self._models or [], usage, model_id, self.default_currency)

    async def do_dispose(self) -> None:
        pass

    async def validate_provider_config(self, config: ProviderConfig) -> ConfigValidationResult:
        return ConfigValidationResult(is_valid=True)

    # =====================
    # Utilities
    # =====================

    def wrap_error(self, error: BaseException, message: str) -> ProviderError:
        """Translate any exception into the provider error hierarchy.

        Provider errors are returned unchanged; anything else is wrapped with
        the original exception kept as ``__cause__``.
        """
        if isinstance(error, ProviderError):
            return error

        wrapped: ProviderError
        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
            wrapped = NetworkTimeoutError(self.id, f"{message}: request timed out")
        elif isinstance(error, httpx.TransportError):
            wrapped = NetworkConnectionError(self.id, f"{message}: {error}")
        else:
            wrapped = ApiError(self.id, f"{message}: {error}", retryable=is_retryable_error(error))
        wrapped.__cause__ = error
        return wrapped

    async def with_retry(self, operation: Callable[[], Awaitable[T]], context: str) -> T:
        """Run ``operation`` with exponential backoff on retryable errors.

        Attempts = max_retries + 1, using the configured max_retries when
        initialized.
        """
        max_retries = self._config.max_retries if self._config else self.max_retries
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(0, max_retries) + 1),
            wait=wait_exponential(multiplier=self.base_retry_delay, max=self.max_retry_delay),
            retry=retry_if_exception(lambda e: is_retryable_error(self.wrap_error(e, context))),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await operation()
        except Exception as e:
            wrapped = self.wrap_error(e, f"{context} failed")
            if wrapped is e:
                raise
            raise wrapped from e
        return result

    def build_result(
        self,
        content: str,
        *,
        model: str,
        usage: TokenUsage | None = None,
        finish_reason: FinishReason | None = None,
        tokens: int | None = None,
        result_id: str | None = None,
    ) -> GenerationResult:
        """Create a GenerationResult stamped with this provider's id."""
        result = GenerationResult(
            content=content,
            model=model,
            provider_id=self.id,
            usage=usage,
            finish_reason=finish_reason,
            tokens=estimate_token_count(content) if tokens is None else tokens,
        )
        if result_id:
            result.id = result_id
        return result

    def _set_status(self, status: ProviderStatus) -> None:
        if self._status == status:
            return
        old_status = self._status
        self._status = status
        logger.info(
            f"Provider {self.id} status changed: {old_status.value} -> {status.value}",
            extra={"provider_id": self.id, "event": "status_changed"},
        )
        self._events.emit(ProviderEvent.STATUS_CHANGED, status)

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise ProviderNotReadyError(self.id, "Provider has been disposed")

    def _ensure_ready(self) -> None:
        self._ensure_not_disposed()
        if not self._initialized:
            raise ProviderNotReadyError(self.id, "Provider is not initialized")
        # rate_limited still admits calls; a success moves back to ready
        if self._status not in (ProviderStatus.READY, ProviderStatus.RATE_LIMITED):
            raise ProviderNotReadyError(self.id, f"Provider is not ready (status: {self._status.value})")

    def _record_failure(self, error: BaseException, message: str) -> ProviderError:
        wrapped = self.wrap_error(error, message)
        if isinstance(wrapped, RateLimitExceededError) and wrapped.source == RateLimitExceededError.VENDOR:
            self._set_status(ProviderStatus.RATE_LIMITED)
        self._events.emit(ProviderEvent.ERROR, wrapped)
        return wrapped

    def _record_success(self) -> None:
        if self._status == ProviderStatus.RATE_LIMITED:
            self._set_status(ProviderStatus.READY)
