"""Retry policy and the generic call-with-retry combinator."""

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .config import LodestarConfig
from .errors import ProviderError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: base_delay, 2*base_delay, 4*base_delay, ... plus jitter."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls, config: LodestarConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
        )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "provider call",
) -> T:
    """
    Await ``fn()`` until it succeeds, retrying transient ``ProviderError``s.

    Non-retryable errors (validation, capacity, permanent provider failures)
    propagate on the first attempt. After ``policy.max_attempts`` the last
    error is re-raised unchanged.
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"{description} failed (attempt {state.attempt_number}/{policy.max_attempts}), "
            f"retrying: {exc}"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.base_delay, min=policy.base_delay, max=policy.max_delay)
        + wait_random(0, policy.jitter),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry,
        reraise=True,
    )
    return await retrying(fn)
