"""
Mock Model Provider for Testing.

Provides a deterministic provider for development and tests without making
real API calls. Latency, failures and the response text are configurable.

Usage:
    from functools import partial

    from provider_hub.providers.mock import MockProvider, register_mock_providers

    register_mock_providers(registry)
    provider = await registry.create_provider("mock", ProviderConfig())

    # A second, always-failing kind under its own id
    flaky = partial(MockProvider, provider_id="flaky", failure_rate=1.0)
    registry.register_provider_kind(flaky().descriptor, flaky)
"""

import asyncio
import dataclasses
import logging
import random
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING

from provider_hub.config.settings import ProviderConfig
from provider_hub.exceptions import ApiError
from provider_hub.providers.base import (
    BaseProvider,
    ConfigValidationResult,
    CostEstimate,
    FinishReason,
    GenerationRequest,
    GenerationResult,
    Model,
    ProviderCapabilities,
    ProviderDescriptor,
    TokenUsage,
    estimate_cost_from_models,
    estimate_token_count,
)

if TYPE_CHECKING:
    from provider_hub.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

MOCK_DESCRIPTOR = ProviderDescriptor(
    id="mock",
    name="Mock Provider",
    description="A mock provider for testing and development",
    capabilities=ProviderCapabilities(streaming=True, local_execution=True),
    requires_api_key=False,
)

MOCK_MODELS = [
    Model(
        id="mock-small",
        name="Mock Small",
        description="A small mock model for testing",
        context_length=4096,
        input_pricing=0.0005,
        output_pricing=0.001,
        is_local=True,
        is_installed=True,
    ),
    Model(
        id="mock-large",
        name="Mock Large",
        description="A large mock model for testing",
        context_length=8192,
        input_pricing=0.001,
        output_pricing=0.002,
        is_local=True,
        is_installed=True,
    ),
]


class MockProvider(BaseProvider):
    """Mock provider for testing without real API calls.

    Useful for:
    - Exercising registry and manager behaviour
    - Failover drills (failure_rate=1.0)
    - CI pipelines without API costs

    Attributes:
        call_count: Number of simulated vendor calls (generate + stream)
    """

    descriptor = MOCK_DESCRIPTOR

    def __init__(
        self,
        *,
        provider_id: str | None = None,
        latency_ms: float = 0.0,
        failure_rate: float = 0.0,
        response_text: str | None = None,
        fail_health_check: bool = False,
        seed: int | None = None,
    ):
        """Initialize mock provider.

        Args:
            provider_id: Register under a different id than "mock"
            latency_ms: Simulated response latency
            failure_rate: Probability of simulated failure (0-1)
            response_text: Fixed response content (default: derived from prompt)
            fail_health_check: Make every health probe fail
            seed: Seed for the failure draw
        """
        if provider_id is not None:
            self.descriptor = dataclasses.replace(
                MOCK_DESCRIPTOR, id=provider_id, name=f"Mock Provider ({provider_id})"
            )
        super().__init__()
        self._latency_ms = latency_ms
        self._failure_rate = failure_rate
        self._response_text = response_text
        self._fail_health_check = fail_health_check
        self._random = random.Random(seed)
        self.call_count = 0

    async def do_initialize(self, config: ProviderConfig) -> None:
        await asyncio.sleep(0)
        logger.debug(f"Mock provider {self.id} initialized")

    async def validate_provider_config(self, config: ProviderConfig) -> ConfigValidationResult:
        warnings = []
        if config.timeout < 2:
            warnings.append("Timeout is very low for mock provider")
        return ConfigValidationResult(is_valid=True, warnings=warnings)

    async def do_get_available_models(self) -> list[Model]:
        return list(MOCK_MODELS)

    async def do_generate(self, request: GenerationRequest) -> GenerationResult:
        await self._simulate_call()

        prompt = request.messages[-1].content
        content = self._response_for(prompt)
        usage = TokenUsage(
            prompt_tokens=self._prompt_tokens(request),
            completion_tokens=estimate_token_count(content),
        )
        return self.build_result(
            content,
            model=request.model,
            usage=usage,
            finish_reason=FinishReason.STOP,
        )

    async def do_generate_stream(self, request: GenerationRequest) -> AsyncGenerator[GenerationResult, None]:
        await self._simulate_call()

        content = self._response_for(request.messages[-1].content)
        words = content.split(" ")
        for index, word in enumerate(words):
            is_last = index == len(words) - 1
            await asyncio.sleep(0)
            yield self.build_result(
                word if is_last else word + " ",
                model=request.model,
                tokens=1,
                finish_reason=FinishReason.STOP if is_last else None,
                usage=(
                    TokenUsage(
                        prompt_tokens=self._prompt_tokens(request),
                        completion_tokens=estimate_token_count(content),
                    )
                    if is_last
                    else None
                ),
            )

    def do_estimate_cost(self, usage: TokenUsage, model_id: str) -> CostEstimate:
        return estimate_cost_from_models(MOCK_MODELS, usage, model_id, self.default_currency)

    async def do_health_check(self) -> None:
        await asyncio.sleep(0)
        if self._fail_health_check:
            raise RuntimeError("Mock health check failed")

    async def do_dispose(self) -> None:
        logger.debug(f"Mock provider {self.id} disposed")

    async def _simulate_call(self) -> None:
        self.call_count += 1
        if self._latency_ms > 0:
            await asyncio.sleep(self._latency_ms / 1000)
        if self._failure_rate > 0 and self._random.random() < self._failure_rate:
            raise ApiError(self.id, "Simulated API failure", status_code=500, retryable=True)

    def _prompt_tokens(self, request: GenerationRequest) -> int:
        text = " ".join(message.content for message in request.messages)
        if request.system_prompt:
            text = f"{request.system_prompt} {text}"
        return estimate_token_count(text)

    def _response_for(self, prompt: str) -> str:
        """Generate a mock response based on the last message."""
        if self._response_text is not None:
            return self._response_text

        lowered = prompt.lower()
        if "chapter" in lowered or "outline" in lowered:
            return "Chapter one introduces the topic, chapter two develops it with examples, and the final chapter summarizes the key lessons."
        elif "explain" in lowered:
            return "This is a mock explanation that covers the key concepts with examples and practical applications for better understanding."
        elif "summarize" in lowered:
            return "Summary: The key points are organized into three main categories with supporting evidence and actionable recommendations."
        else:
            return "Mock response generated successfully. This simulates a helpful and accurate response to the user query."


def register_mock_providers(registry: "ProviderRegistry") -> None:
    """Register the mock provider kind with ``registry``.

    Call this before running in mock mode.
    """
    registry.register_provider(MockProvider)
