"""Gateway configuration.

Config discovery (first match wins):
  1. explicit ``path`` argument
  2. ``$LLM_GATEWAY_CONFIG``
  3. ``./llm_gateway.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from llm_gateway.errors import ConfigurationError
from llm_gateway.retry import RetryPolicy
from llm_gateway.types import ProviderConfig

_logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LLM_GATEWAY_CONFIG"
_SEARCH_PATHS = [Path("./llm_gateway.yaml")]


class RetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    initial_delay_ms: float = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=0)
    max_delay_ms: float = Field(default=60000, ge=0)
    jitter_factor: float = Field(default=0.1, ge=0, le=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.model_dump())


class ProviderSettings(ProviderConfig):
    """Provider entry as written in YAML; the key may come from the environment."""

    id: str
    api_key_env: str | None = None

    def resolved(self, default_timeout_s: float | None = None) -> ProviderConfig:
        data = self.model_dump(exclude={"api_key_env"})
        if not data["api_key"] and self.api_key_env:
            data["api_key"] = os.environ.get(self.api_key_env)
        if default_timeout_s is not None and "timeout_s" not in self.model_fields_set:
            data["timeout_s"] = default_timeout_s
        return ProviderConfig(**data)


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    default_provider: str | None = None
    providers: list[ProviderSettings] = Field(default_factory=list)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    max_iterations: int = Field(default=10, ge=1)
    timeout_s: float = Field(default=120.0, gt=0)
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    def provider_ids(self) -> list[str]:
        return [p.id for p in self.providers]

    def resolve_provider(self, provider_id: str | None = None) -> ProviderConfig:
        """Return the resolved settings for ``provider_id`` (or the default)."""
        wanted = provider_id or self.default_provider
        if wanted is None and len(self.providers) == 1:
            wanted = self.providers[0].id
        if wanted is None:
            raise ConfigurationError("No provider specified and no default provider configured.")
        for provider in self.providers:
            if provider.id == wanted:
                return provider.resolved(self.timeout_s)
        raise ConfigurationError(f"Provider '{wanted}' is not configured.")


def parse_config(raw: dict[str, Any]) -> GatewayConfig:
    try:
        return GatewayConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid gateway configuration: {exc}") from exc


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Load configuration from YAML, falling back to defaults."""
    config_path: Path | None = None

    if path is None and os.environ.get(CONFIG_ENV_VAR):
        path = os.environ[CONFIG_ENV_VAR]

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found; using defaults")
        return GatewayConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return parse_config(raw)
