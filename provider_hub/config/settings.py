"""
Provider and manager configuration schemas.

Configuration is a closed, versioned schema: unknown keys are rejected so a
typo in a settings file fails loudly instead of being silently ignored.

Usage:
    from provider_hub.config import load_providers_config

    settings = load_providers_config(Path("providers.yaml"))
    registry, manager = build_provider_stack(settings)

Example providers.yaml:
    version: 1
    manager:
      default_provider: groq
      fallback_providers: [openai, mock]
      max_concurrent_requests: 4
    providers:
      groq:
        api_key: gsk_...
        timeout: 60
      mock: {}
"""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError

from provider_hub.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_HEALTH_CHECK_INTERVAL = 30.0
DEFAULT_MAX_CONCURRENT_REQUESTS = 10


class ProviderConfig(BaseModel):
    """Connection settings for one provider instance.

    Immutable: reconfiguration builds a new value (see merged()).
    Range checks (timeout, retries) happen in the provider's validate_config
    so that they surface as InvalidConfigError at initialize time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    api_key: SecretStr | None = None
    endpoint: str | None = None
    organization_id: str | None = None
    project_id: str | None = None
    custom_headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, description="Request timeout in seconds")
    max_retries: int = DEFAULT_MAX_RETRIES

    def merged(self, **changes: Any) -> "ProviderConfig":
        """Return a new config with ``changes`` applied and re-validated."""
        data = self.model_dump()
        data.update(changes)
        return ProviderConfig.model_validate(data)

    @property
    def credential(self) -> str:
        """Plain API key, or an empty string when unset."""
        return self.api_key.get_secret_value() if self.api_key else ""


class ManagerConfig(BaseModel):
    """Runtime policy for the provider manager."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_provider: str | None = None
    fallback_providers: list[str] = Field(default_factory=list)
    health_check_interval: float = Field(
        default=DEFAULT_HEALTH_CHECK_INTERVAL,
        ge=0,
        description="Seconds between health sweeps (0 disables monitoring)",
    )
    enable_auto_failover: bool = True
    max_concurrent_requests: int = Field(default=DEFAULT_MAX_CONCURRENT_REQUESTS, ge=1)


class ProvidersFileConfig(BaseModel):
    """Top-level settings file: manager policy plus per-provider configs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Literal[1] = CONFIG_VERSION
    manager: ManagerConfig = Field(default_factory=ManagerConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)


def parse_providers_config(data: dict[str, Any] | None, source: str | None = None) -> ProvidersFileConfig:
    """Validate a raw mapping into ProvidersFileConfig.

    Args:
        data: Parsed YAML/JSON mapping (None is treated as empty)
        source: Where the data came from, for error messages

    Raises:
        ConfigurationError: If the mapping does not match the schema
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Provider configuration must be a mapping, got {type(data).__name__}",
            path=source,
        )
    try:
        return ProvidersFileConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid provider configuration: {e}", path=source) from e


def load_providers_config(path: Path) -> ProvidersFileConfig:
    """Load provider settings from a YAML file.

    A missing file yields the default configuration.

    Args:
        path: Path to the YAML file

    Returns:
        Validated ProvidersFileConfig

    Raises:
        ConfigurationError: If the file cannot be parsed or fails validation
    """
    if not path.exists():
        logger.warning(f"Provider config not found: {path}, using defaults")
        return ProvidersFileConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed YAML in {path}: {e}", path=str(path)) from e

    settings = parse_providers_config(data, source=str(path))
    logger.info(f"Loaded configuration for {len(settings.providers)} providers from {path}")
    return settings
