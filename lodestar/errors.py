"""Exception taxonomy for the Lodestar retrieval core."""

from typing import Any, Dict, Optional

import httpx
import openai


class LodestarError(Exception):
    """Base exception for all Lodestar errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(LodestarError):
    """Input rejected before any work was done (empty or too short)."""


class ProviderError(LodestarError):
    """An embedding or generation provider call failed."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        provider: str = "unknown",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retryable = retryable
        self.provider = provider


class CapacityError(ProviderError):
    """The payload exceeds what the provider accepts. Never retried with backoff."""

    def __init__(self, message: str, *, provider: str = "unknown", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, retryable=False, provider=provider, context=context)


class PersistenceError(LodestarError):
    """A chunk/document store write failed. Earlier batches stay written."""


class IndexStaleError(LodestarError):
    """The in-memory index no longer matches the persisted chunk set."""


_CAPACITY_MARKERS = ("context_length_exceeded", "maximum context length", "too many tokens", "too large")


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def classify_openai_error(exc: openai.OpenAIError, provider: str = "openai") -> ProviderError:
    """Translate an OpenAI SDK exception into the Lodestar taxonomy."""
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return ProviderError(f"{provider} transient failure: {exc}", retryable=True, provider=provider)

    if isinstance(exc, openai.APIStatusError):
        text = str(exc).lower()
        code = getattr(exc, "code", None) or ""
        if exc.status_code == 413 or code == "context_length_exceeded" or any(
            marker in text for marker in _CAPACITY_MARKERS
        ):
            return CapacityError(f"{provider} rejected the payload as too large: {exc}", provider=provider)
        return ProviderError(
            f"{provider} error {exc.status_code}: {exc}",
            retryable=is_retryable_status(exc.status_code),
            provider=provider,
            context={"status_code": exc.status_code},
        )

    return ProviderError(f"{provider} error: {exc}", retryable=False, provider=provider)


def classify_http_error(exc: httpx.HTTPError, provider: str) -> ProviderError:
    """Translate an httpx exception into the Lodestar taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 413:
            return CapacityError(f"{provider} rejected the payload as too large", provider=provider)
        return ProviderError(
            f"{provider} HTTP {status}: {exc.response.text[:100]}",
            retryable=is_retryable_status(status),
            provider=provider,
            context={"status_code": status},
        )
    # Timeouts, connection resets and other transport failures
    return ProviderError(f"{provider} transport error: {exc}", retryable=True, provider=provider)
