"""
Providers for OpenAI-compatible chat completion APIs.

OpenAI and Groq expose the same ``/chat/completions`` and ``/models``
endpoints, so one httpx-based adapter serves both; each vendor subclass only
supplies its descriptor, default endpoint and model catalog.

Usage:
    registry.register_provider(GroqProvider)
    groq = await registry.create_provider("groq", ProviderConfig(api_key="gsk_..."))
    result = await groq.generate(
        GenerationRequest(messages=[Message("user", "Hello")], model="llama-3.1-8b-instant")
    )
"""

import json
import logging
import math
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from provider_hub.config.settings import ProviderConfig
from provider_hub.exceptions import ApiError, InvalidConfigError, ProviderError, RateLimitExceededError
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

logger = logging.getLogger(__name__)

USER_AGENT = "provider-hub/0.1"


class OpenAICompatibleProvider(BaseProvider):
    """Base adapter for vendors speaking the OpenAI chat completions schema.

    Subclasses set ``descriptor``, ``default_endpoint``, ``models`` and
    optionally ``api_key_prefix``.
    """

    default_endpoint: str = ""
    models: list[Model] = []
    api_key_prefix: str | None = None

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize the adapter.

        Args:
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        super().__init__()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        endpoint = (self.config.endpoint if self.config else None) or self.default_endpoint
        return endpoint.rstrip("/")

    # =====================
    # Lifecycle hooks
    # =====================

    async def validate_provider_config(self, config: ProviderConfig) -> ConfigValidationResult:
        warnings = []
        if self.api_key_prefix and config.credential and not config.credential.startswith(self.api_key_prefix):
            warnings.append(f"{self.descriptor.name} API key should start with '{self.api_key_prefix}'")
        return ConfigValidationResult(is_valid=True, warnings=warnings)

    async def do_initialize(self, config: ProviderConfig) -> None:
        await self._close_client()

        headers = {
            "Authorization": f"Bearer {config.credential}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if config.organization_id:
            headers["OpenAI-Organization"] = config.organization_id
        if config.project_id:
            headers["OpenAI-Project"] = config.project_id
        headers.update(config.custom_headers)

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=config.timeout,
            transport=self._transport,
        )

        # Test the connection
        await self.with_retry(lambda: self._request("GET", "/models"), "Connection test")
        logger.info(f"{self.descriptor.name} provider initialized", extra={"provider_id": self.id})

    async def do_get_available_models(self) -> list[Model]:
        return list(self.models)

    async def do_health_check(self) -> None:
        await self._request("GET", "/models")

    async def do_dispose(self) -> None:
        await self._close_client()

    # =====================
    # Generation
    # =====================

    async def do_generate(self, request: GenerationRequest) -> GenerationResult:
        payload = self._build_payload(request, stream=False)
        data = await self.with_retry(
            lambda: self._request("POST", "/chat/completions", json=payload), "Chat completion"
        )

        choices = data.get("choices") or []
        if not choices:
            raise ApiError(self.id, f"No response choices returned from {self.descriptor.name}")
        choice = choices[0]
        content = (choice.get("message") or {}).get("content") or ""

        return self.build_result(
            content,
            model=data.get("model", request.model),
            usage=_parse_usage(data.get("usage")),
            finish_reason=FinishReason.from_vendor(choice.get("finish_reason")),
            result_id=data.get("id"),
        )

    async def do_generate_stream(self, request: GenerationRequest) -> AsyncGenerator[GenerationResult, None]:
        payload = self._build_payload(request, stream=True)
        client = self._require_client()

        async with client.stream(
            "POST", "/chat/completions", json=payload, headers={"Accept": "text/event-stream"}
        ) as response:
            if response.is_error:
                await response.aread()
                raise self._error_for_response(response)

            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    return

                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError as e:
                    logger.warning(f"Failed to parse streaming chunk from {self.id}: {e}")
                    continue

                choices = chunk.get("choices") or []
                choice = choices[0] if choices else {}
                content = (choice.get("delta") or {}).get("content") or ""
                finish_reason = FinishReason.from_vendor(choice.get("finish_reason"))
                usage = _parse_usage(chunk.get("usage") or (chunk.get("x_groq") or {}).get("usage"))

                if content or finish_reason or usage:
                    yield self.build_result(
                        content,
                        model=chunk.get("model", request.model),
                        usage=usage,
                        finish_reason=finish_reason,
                        result_id=chunk.get("id"),
                    )

    # =====================
    # Tokens and cost
    # =====================

    async def do_count_tokens(self, text: str, model: str | None = None) -> int:
        # No tokenization endpoint; llama-family models average ~3.5 chars per token
        if model and "llama" in model:
            return math.ceil(len(text) / 3.5)
        return estimate_token_count(text)

    def do_estimate_cost(self, usage: TokenUsage, model_id: str) -> CostEstimate:
        return estimate_cost_from_models(self.models, usage, model_id, self.default_currency)

    # =====================
    # HTTP helpers
    # =====================

    def _build_payload(self, request: GenerationRequest, *, stream: bool) -> dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for message in request.messages:
            item = {"role": message.role, "content": message.content}
            if message.name:
                item["name"] = message.name
            messages.append(item)

        payload: dict[str, Any] = {"model": request.model, "messages": messages, "stream": stream}
        optional = {
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
            "stop": request.stop,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = self._require_client()
        response = await client.request(method, path, **kwargs)
        if response.is_error:
            raise self._error_for_response(response)
        return response.json()

    def _error_for_response(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        message = f"HTTP {status}: {response.reason_phrase}"
        try:
            error = response.json().get("error")
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
        except (json.JSONDecodeError, AttributeError):
            message = response.text or message

        details = {"status": status, "url": str(response.request.url)}
        if status == 429:
            retry_after = response.headers.get("retry-after")
            return RateLimitExceededError(
                self.id,
                message,
                source=RateLimitExceededError.VENDOR,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                details=details,
            )
        if status in (401, 403):
            return InvalidConfigError(
                self.id,
                message,
                details=details,
                user_message=f"Please check your {self.descriptor.name} API key.",
            )
        return ApiError(
            self.id,
            message,
            status_code=status,
            retryable=status >= 500 or status == 408,
            details=details,
        )

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ApiError(self.id, "HTTP client is not initialized")
        return self._client

    async def _close_client(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()


def _parse_usage(data: dict[str, Any] | None) -> TokenUsage | None:
    if not data:
        return None
    prompt = data.get("prompt_tokens")
    completion = data.get("completion_tokens")
    if prompt is None or completion is None:
        return None
    return TokenUsage(prompt_tokens=int(prompt), completion_tokens=int(completion))


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI chat completions."""

    descriptor = ProviderDescriptor(
        id="openai",
        name="OpenAI",
        description="GPT models from OpenAI",
        website="https://openai.com",
        capabilities=ProviderCapabilities(
            streaming=True, function_calling=True, custom_endpoints=True, image_input=True
        ),
    )
    default_endpoint = "https://api.openai.com/v1"
    api_key_prefix = "sk-"
    models = [
        Model(
            id="gpt-4o",
            name="GPT-4o",
            description="Flagship multimodal model",
            context_length=128000,
            input_pricing=2.50 / 1000,
            output_pricing=10.00 / 1000,
        ),
        Model(
            id="gpt-4o-mini",
            name="GPT-4o mini",
            description="Small, fast and inexpensive model",
            context_length=128000,
            input_pricing=0.15 / 1000,
            output_pricing=0.60 / 1000,
        ),
    ]


class GroqProvider(OpenAICompatibleProvider):
    """Groq's OpenAI-compatible inference API."""

    descriptor = ProviderDescriptor(
        id="groq",
        name="Groq",
        description="Ultra-fast AI inference with open-source models",
        website="https://groq.com",
        capabilities=ProviderCapabilities(streaming=True, function_calling=True, custom_endpoints=True),
    )
    default_endpoint = "https://api.groq.com/openai/v1"
    api_key_prefix = "gsk_"
    # Pricing converted from per-1M to per-1K tokens
    models = [
        Model(
            id="llama-3.1-70b-versatile",
            name="Llama 3.1 70B Versatile",
            description="Balanced model for general-purpose tasks",
            context_length=131072,
            input_pricing=0.59 / 1000,
            output_pricing=0.79 / 1000,
        ),
        Model(
            id="llama-3.1-8b-instant",
            name="Llama 3.1 8B Instant",
            description="Fast and efficient model for quick responses",
            context_length=131072,
            input_pricing=0.05 / 1000,
            output_pricing=0.08 / 1000,
        ),
        Model(
            id="mixtral-8x7b-32768",
            name="Mixtral 8x7B",
            description="Mistral AI's mixture of experts model",
            context_length=32768,
            input_pricing=0.24 / 1000,
            output_pricing=0.24 / 1000,
        ),
    ]
