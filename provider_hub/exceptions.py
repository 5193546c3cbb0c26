"""
Unified Exception Hierarchy for provider-hub.

Every error raised by the provider layer derives from ProviderError so that
callers can catch any provider failure with a single except clause while
still distinguishing the kind of failure when they need to.

Usage:
    from provider_hub.exceptions import (
        ProviderError,
        ProviderNotReadyError,
        RateLimitExceededError,
    )

    try:
        result = await manager.generate(request)
    except RateLimitExceededError as e:
        if e.source == "admission":
            # Local concurrency cap, try again shortly
            ...
    except ProviderError as e:
        logger.error(f"Generation failed on {e.provider_id}: {e}")

Note:
    Every error keeps the originating provider id and a human-readable
    message. Wrapping uses ``raise ... from exc`` so the original cause is
    never discarded.
"""

import re
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes shared across providers."""

    PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    PROVIDER_INVALID_CONFIG = "PROVIDER_INVALID_CONFIG"
    PROVIDER_API_ERROR = "PROVIDER_API_ERROR"
    PROVIDER_REGISTRATION_FAILED = "PROVIDER_REGISTRATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    NETWORK_CONNECTION_FAILED = "NETWORK_CONNECTION_FAILED"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    VALIDATION_INVALID_REQUEST = "VALIDATION_INVALID_REQUEST"
    CONFIG_INVALID_FORMAT = "CONFIG_INVALID_FORMAT"


class ProviderError(Exception):
    """Base exception for all provider errors.

    Attributes:
        provider_id: Id of the provider the error originated from (None when
            no provider could be resolved).
        code: ErrorCode describing the kind of failure.
        message: Human-readable error description.
        retryable: Whether retrying the same operation may succeed.
        details: Optional dict with additional error context.
        user_message: Optional message suitable for display in a UI.
    """

    default_code = ErrorCode.PROVIDER_API_ERROR
    default_retryable = False

    def __init__(
        self,
        provider_id: str | None,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.message = message
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details or {}
        self.user_message = user_message

    def __str__(self) -> str:
        if self.provider_id:
            return f"[{self.provider_id}] {self.message}"
        return self.message


class ProviderNotFoundError(ProviderError):
    """Raised when an unregistered provider id is referenced."""

    default_code = ErrorCode.PROVIDER_NOT_FOUND


class ProviderNotReadyError(ProviderError):
    """Raised when an operation is attempted outside the ``ready`` state.

    Covers both "never initialized" and "initialized but currently in error
    or disposed". These indicate a caller or configuration bug and are never
    retried automatically.
    """

    default_code = ErrorCode.PROVIDER_NOT_CONFIGURED


class InvalidConfigError(ProviderError):
    """Configuration failed validation at initialize/configure time.

    Attributes:
        errors: Individual validation messages.
    """

    default_code = ErrorCode.PROVIDER_INVALID_CONFIG

    def __init__(
        self,
        provider_id: str | None,
        message: str,
        *,
        errors: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(provider_id, message, **kwargs)
        self.errors = list(errors or [])


class ProviderRegistrationError(ProviderError):
    """A provider kind could not be registered (duplicate or malformed)."""

    default_code = ErrorCode.PROVIDER_REGISTRATION_FAILED


class ApiError(ProviderError):
    """Vendor HTTP-level failure.

    Attributes:
        status_code: HTTP status code if the vendor returned one.
    """

    default_code = ErrorCode.PROVIDER_API_ERROR

    def __init__(
        self,
        provider_id: str | None,
        message: str,
        *,
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(provider_id, message, **kwargs)
        self.status_code = status_code

    def __str__(self) -> str:
        text = super().__str__()
        if self.status_code:
            return f"{text} (HTTP {self.status_code})"
        return text


class RateLimitExceededError(ProviderError):
    """Rate limit exceeded.

    Raised both for the manager's local admission control and for a vendor
    HTTP 429. Inspect ``source`` to tell them apart.

    Attributes:
        source: "admission" for the local concurrency cap, "vendor" for a 429.
        retry_after: Seconds to wait before retrying, if the vendor said so.
    """

    default_code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_retryable = True

    ADMISSION = "admission"
    VENDOR = "vendor"

    def __init__(
        self,
        provider_id: str | None,
        message: str = "Rate limit exceeded",
        *,
        source: str = VENDOR,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(provider_id, message, **kwargs)
        self.source = source
        self.retry_after = retry_after


class NetworkTimeoutError(ProviderError):
    """Transport-level timeout. Always retryable."""

    default_code = ErrorCode.NETWORK_TIMEOUT
    default_retryable = True

    def __init__(self, provider_id: str | None, message: str = "Request timed out", **kwargs: Any) -> None:
        kwargs["retryable"] = True
        super().__init__(provider_id, message, **kwargs)


class NetworkConnectionError(ProviderError):
    """Transport-level connection failure. Always retryable."""

    default_code = ErrorCode.NETWORK_CONNECTION_FAILED
    default_retryable = True

    def __init__(
        self, provider_id: str | None, message: str = "Connection failed", **kwargs: Any
    ) -> None:
        kwargs["retryable"] = True
        super().__init__(provider_id, message, **kwargs)


class AllProvidersFailedError(ProviderError):
    """Failover exhausted without any provider producing a result.

    Attributes:
        attempted: Provider ids that were considered, in order.
    """

    default_code = ErrorCode.ALL_PROVIDERS_FAILED

    def __init__(
        self,
        message: str = "All providers failed",
        *,
        attempted: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(None, message, **kwargs)
        self.attempted = list(attempted or [])


class UnsupportedOperationError(ProviderError):
    """The provider does not advertise the capability an operation needs."""

    default_code = ErrorCode.UNSUPPORTED_OPERATION


class RequestValidationError(ProviderError):
    """Generation request parameters are invalid."""

    default_code = ErrorCode.VALIDATION_INVALID_REQUEST


class ConfigurationError(Exception):
    """Configuration file is missing required structure or malformed.

    Raised by the config loader, before any provider is involved.
    """

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path


_RETRYABLE_PATTERNS = [
    re.compile(r"timeout", re.IGNORECASE),
    re.compile(r"connection", re.IGNORECASE),
    re.compile(r"network", re.IGNORECASE),
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"temporar", re.IGNORECASE),
    re.compile(r"\b50[234]\b"),
]


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether an error is worth retrying.

    Provider errors carry an explicit flag; for anything else fall back to
    matching well-known transient failure messages.

    Args:
        error: Any exception.

    Returns:
        True if retrying may succeed.
    """
    if isinstance(error, ProviderError):
        return error.retryable
    message = str(error)
    return any(pattern.search(message) for pattern in _RETRYABLE_PATTERNS)


__all__ = [
    "ErrorCode",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderNotReadyError",
    "InvalidConfigError",
    "ProviderRegistrationError",
    "ApiError",
    "RateLimitExceededError",
    "NetworkTimeoutError",
    "NetworkConnectionError",
    "AllProvidersFailedError",
    "UnsupportedOperationError",
    "RequestValidationError",
    "ConfigurationError",
    "is_retryable_error",
]
