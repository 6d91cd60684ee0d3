"""Package specific exception hierarchy."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base exception for llm_gateway package."""

    code = "upstream_error"
    status_code = 500

    @property
    def public_message(self) -> str:
        """Message that is safe to show to API clients."""
        return str(self)

    def to_payload(self) -> dict[str, Any]:
        """Return the client-facing ``{error, message}`` body."""
        return {"error": self.code, "message": self.public_message}


class ConfigurationError(GatewayError):
    """Raised when a provider is missing or lacks credentials."""

    code = "configuration_error"
    status_code = 400


class UnsupportedProviderError(ConfigurationError):
    """Raised when a provider type has no adapter."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider '{provider}' is not available.")


class InvalidRequestError(GatewayError):
    """Raised when the inbound chat request is malformed."""

    code = "validation_error"
    status_code = 400


class UpstreamError(GatewayError):
    """Represents provider HTTP errors and exhausted retries."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after_ms: float | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after_ms = retry_after_ms
        self.provider = provider
        self.status_code = status if status is not None and status >= 400 else 502


class NetworkError(UpstreamError):
    """Transport-level failure (DNS, connection reset, timeout)."""


class TranslationError(GatewayError):
    """Raised when an adapter cannot map between canonical and wire shapes."""

    @property
    def public_message(self) -> str:
        return "Failed to translate the provider exchange."


class ToolExecutionError(GatewayError):
    """A tool handler failed. Never surfaced; converted to tool output."""

    def __init__(self, tool: str, reason: str) -> None:
        super().__init__(f"Tool {tool} failed: {reason}")
        self.tool = tool
