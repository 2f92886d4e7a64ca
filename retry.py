"""
Retry with exponential backoff.

Wraps any unit of work (an API call, an enrichment step, a sequence
enrollment) and re-runs it while failures classify as transient.
"""

import asyncio
import random
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, TypeVar

from errors import classify_error, get_error_message, get_status_code
from log_utils import create_logger

logger = create_logger("retry")

T = TypeVar("T")

# Retry defaults (seconds)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_JITTER = 1.0


@dataclass(frozen=True)
class RetryEvent:
    """Passed to ``on_retry`` before each backoff sleep."""

    attempt: int
    max_attempts: int
    delay: float
    error: BaseException


@dataclass
class RetryConfig:
    """Per-call retry settings."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter: float = DEFAULT_JITTER  # upper bound of the uniform jitter added per attempt
    on_retry: Callable[[RetryEvent], Any] | None = None
    operation_name: str = "operation"
    respect_retry_after: bool = False  # use the server's Retry-After header when present

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("Retry delays must be non-negative")


def calculate_backoff(attempt: int, base_delay: float, max_delay: float,
                      jitter: float = DEFAULT_JITTER) -> float:
    """Delay after failed attempt ``attempt`` (1-based).

    Grows with the attempt index, not elapsed time, and never exceeds max_delay.
    """
    exponential = base_delay * (2 ** (attempt - 1))
    return min(exponential + random.uniform(0, jitter), max_delay)


def get_retry_after_seconds(error: Any) -> float | None:
    """Seconds to wait from a Retry-After header on the error's response.

    The header may be a number of seconds or an HTTP date.
    """
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None

    retry_after = headers.get("Retry-After") or headers.get("retry-after")
    if not retry_after:
        return None

    try:
        return max(0.0, float(retry_after))
    except (TypeError, ValueError):
        pass

    try:
        when = parsedate_to_datetime(str(retry_after))
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _next_delay(error: BaseException, attempt: int, config: RetryConfig) -> float | None:
    """Decide what to do after a failed attempt.

    Returns None when the error must be propagated, otherwise the delay.
    """
    classification = classify_error(error)
    is_last_attempt = attempt >= config.max_attempts

    error_info = {
        "attempt": attempt,
        "max_attempts": config.max_attempts,
        "operation": config.operation_name,
        "error_message": get_error_message(error),
        "status_code": get_status_code(error),
        "error_type": classification.type.value,
        "retryable": classification.retryable,
    }

    if not classification.retryable:
        logger.warning("Non-retryable error encountered", **error_info)
        return None

    if is_last_attempt:
        logger.error("Max retry attempts exceeded", **error_info)
        return None

    delay = None
    if config.respect_retry_after:
        retry_after = get_retry_after_seconds(error)
        if retry_after is not None:
            delay = min(retry_after, config.max_delay)
    if delay is None:
        delay = calculate_backoff(attempt, config.base_delay, config.max_delay, config.jitter)

    logger.info("Retrying after transient error", delay=round(delay, 3), **error_info)

    if config.on_retry:
        try:
            config.on_retry(RetryEvent(
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=delay,
                error=error,
            ))
        except Exception as callback_error:
            # The operation's failure stays the one that propagates
            logger.exception(
                "on_retry callback failed",
                operation=config.operation_name,
                attempt=attempt,
                callback_error=str(callback_error),
            )
    return delay


def retry_with_backoff(operation: Callable[[], T], config: RetryConfig | None = None, *,
                       sleep: Callable[[float], Any] = time.sleep) -> T:
    """Run ``operation`` until it succeeds, fails permanently, or runs out of attempts.

    The last error is re-raised unchanged.
    """
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return operation()
        except Exception as error:
            delay = _next_delay(error, attempt, config)
            if delay is None:
                raise
            sleep(delay)

    # Unreachable: the final attempt either returns or raises
    raise RuntimeError("retry loop exited without a result")


async def async_retry_with_backoff(operation: Callable[[], Awaitable[T]],
                                   config: RetryConfig | None = None, *,
                                   sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> T:
    """Async variant of retry_with_backoff for coroutine-based clients."""
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await operation()
        except Exception as error:
            delay = _next_delay(error, attempt, config)
            if delay is None:
                raise
            await sleep(delay)

    raise RuntimeError("retry loop exited without a result")


def create_retry_wrapper(**defaults) -> Callable[..., Any]:
    """Pre-configure retry options, e.g. per upstream API.

    Usage:
        hubspot_retry = create_retry_wrapper(max_attempts=5, operation_name="hubspot")
        contact = hubspot_retry(lambda: client.get_contact(contact_id))
    """
    base = RetryConfig(**defaults)

    def wrapper(operation: Callable[[], T], **overrides) -> T:
        config = replace(base, **overrides) if overrides else base
        return retry_with_backoff(operation, config)

    return wrapper
