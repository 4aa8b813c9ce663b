"""
AI Router Exceptions
====================
All router errors inherit from AIRouterError so callers can catch the
whole family with one clause. Adapter errors carry the provider name.
"""

from __future__ import annotations

import httpx


def format_http_error(exc: httpx.HTTPStatusError) -> str:
    """Format detailed error message from HTTP exception."""
    response = exc.response
    message = response.reason_phrase or str(exc)
    retry_after = response.headers.get("Retry-After")

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_info = payload.get("error")
        if isinstance(error_info, dict) and error_info.get("message"):
            message = error_info["message"]
        elif isinstance(error_info, str) and error_info:
            message = error_info

    if retry_after:
        message = f"{message} Retry-After: {retry_after}."

    return f"HTTP {response.status_code}: {message}"


class AIRouterError(Exception):
    """Base exception for all router errors."""

    def __init__(
        self, message: str = "", *, provider: str | None = None, retryable: bool = False
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable


class NotInitializedError(AIRouterError):
    """Adapter used before initialize() completed."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider} provider is not initialized", provider=provider)


class UnsupportedModelError(AIRouterError):
    """Requested model is not in the adapter catalog."""

    def __init__(self, provider: str, model: str) -> None:
        super().__init__(
            f"Model {model} is not supported by {provider} provider", provider=provider
        )
        self.model = model


class NoModelsAvailableError(AIRouterError):
    """Adapter catalog is empty."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"No models available for {provider}", provider=provider)


class UpstreamHTTPError(AIRouterError):
    """Vendor returned a non-success response."""

    def __init__(
        self, status: int, body: str, *, provider: str | None = None, message: str = ""
    ) -> None:
        label = provider or "upstream"
        super().__init__(
            message or f"{label} API error: HTTP {status} - {body}",
            provider=provider,
            retryable=status == 429 or status >= 500,
        )
        self.status = status
        self.body = body

    @classmethod
    def from_response(
        cls, exc: httpx.HTTPStatusError, provider: str | None = None
    ) -> UpstreamHTTPError:
        return cls(
            exc.response.status_code,
            exc.response.text,
            provider=provider,
            message=f"{provider or 'upstream'} API error: {format_http_error(exc)}",
        )


class ProviderTimeoutError(AIRouterError):
    """Call did not complete within its deadline."""

    def __init__(self, message: str = "Request timed out", *, provider: str | None = None) -> None:
        super().__init__(message, provider=provider, retryable=True)


class NoResponseBodyError(AIRouterError):
    """Streaming response had no readable body."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"No response body from {provider}", provider=provider)


class ProviderNotAvailableError(AIRouterError):
    """Explicitly requested provider is not currently available."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider {provider} is not available", provider=provider)


class NoProvidersAvailableError(AIRouterError):
    """No provider could be selected for the request."""

    def __init__(self, message: str = "No providers available") -> None:
        super().__init__(message)


class NoVisionProvidersAvailableError(AIRouterError):
    """No vision-capable provider is currently available."""

    def __init__(self, message: str = "No vision providers available") -> None:
        super().__init__(message)
