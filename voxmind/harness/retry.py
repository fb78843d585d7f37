"""
Retry logic for provider calls.

Local model servers restart, hosted APIs rate-limit, networks drop. Provider
calls are wrapped in ``with_retries`` so transient failures are absorbed with
exponential backoff and jitter, while permanent failures (bad request, bad
credentials, unknown model) surface immediately.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Optional, TypeVar

import anthropic
import httpx
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504, 529})


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range

    @classmethod
    def from_llm_config(cls, config: Any) -> "RetryConfig":
        return cls(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter_range=config.retry_jitter_range,
        )


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Retryable: 408/429/5xx responses, connection and timeout errors.
    Not retryable: other 4xx responses and anything that is not I/O.
    """
    if isinstance(error, anthropic.RateLimitError):
        return True
    if isinstance(error, anthropic.InternalServerError):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, anthropic.APIConnectionError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in _RETRYABLE_STATUS
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def _retry_after_seconds(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        raw = headers.get("retry-after")
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Compute the delay before the next retry attempt.

        delay = min(max_delay, base_delay * exponential_base ** attempt)
        delay += uniform jitter in [-jitter_range * delay, +jitter_range * delay]

    A server-provided Retry-After wins (never less than 1 second).
    """
    if retry_after is not None and retry_after > 0:
        return max(1.0, retry_after)

    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.05, delay + jitter)


async def with_retries(
    func: Callable[[], Any],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> Any:
    """
    Execute an async zero-argument callable with retry logic.

    Raises the last error once retries are exhausted or as soon as a
    non-retryable error is seen.
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.error(
                    "retry.non_retryable_error",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    attempt=attempt,
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after_seconds(e))
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)
            await asyncio.sleep(delay)

    raise RuntimeError("with_retries exited without a result")  # pragma: no cover
