"""Retry utilities for handling transient failures.

Provides the Backoff Executor used by every pipeline step, plus a
decorator form for provider methods. Operations are retried with
exponential backoff when their error is classified as transient.

Key Features:
    - Exponential backoff capped at a maximum delay
    - Retryable/fatal classification by error code or message pattern
    - Maximum attempt limiting
    - Optional hook invoked before each retry
    - Structured logging of retry attempts

Key Exports:
    RetryPolicy: Immutable retry configuration.
    retry: Execute an async operation under a policy.
    async_retry: Decorator for adding retry logic to async functions.
    is_retryable_error: Default transient-error classification.
    calculate_delay: Backoff delay before the next attempt.

Example:
    >>> from fixflow.utils.retry import RetryPolicy, retry
    >>>
    >>> policy = RetryPolicy(max_attempts=5, initial_delay=0.5)
    >>> page = await retry(lambda: tracker.get_item("qa-7"), policy)

Thread Safety:
    The executor holds no state across calls. Each call keeps its own
    attempt counter, so it is safe for concurrent use.

Backoff Formula:
    delay(attempt) = min(initial_delay * backoff_multiplier ** (attempt - 1), max_delay)
    For initial_delay=1.0, backoff_multiplier=2.0: 1s, 2s, 4s, 8s, ... capped at max_delay
"""

import asyncio
import functools
import re
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")

RetryHook = Callable[[BaseException, int], None]
SleepFunc = Callable[[float], Awaitable[Any]]

_RETRYABLE_PATTERNS = (
    re.compile(r"network", re.IGNORECASE),
    re.compile(r"timeout", re.IGNORECASE),
    re.compile(r"timed out", re.IGNORECASE),
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"ECONNRESET"),
    re.compile(r"ETIMEDOUT"),
    re.compile(r"ENOTFOUND"),
    re.compile(r"\b429\b"),
    re.compile(r"\b502\b"),
    re.compile(r"\b503\b"),
    re.compile(r"\b504\b"),
)

_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one operation.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        initial_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound for any single delay, in seconds.
        backoff_multiplier: Factor applied to the delay after each attempt.
        retryable_errors: Explicit set of error codes or exception class
            names to retry. When set, the default classification is not
            used at all.
        on_retry: Hook called with ``(error, attempt)`` before each delay.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_errors: frozenset[str] | None = None
    on_retry: RetryHook | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")


def calculate_delay(attempt: int, policy: RetryPolicy) -> float:
    """Compute the delay between attempt ``attempt`` and the next one.

    Args:
        attempt: 1-based number of the attempt that just failed.
        policy: Policy providing delay parameters.

    Returns:
        Delay in seconds, never more than ``policy.max_delay``.
    """
    delay = policy.initial_delay * policy.backoff_multiplier ** (attempt - 1)
    return min(delay, policy.max_delay)


def error_code(error: BaseException) -> str:
    """Return the error's ``code`` attribute, or its class name."""
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(error).__name__


def is_retryable_error(
    error: BaseException,
    retryable_errors: Collection[str] | None = None,
) -> bool:
    """Decide whether an error is worth another attempt.

    With an explicit ``retryable_errors`` set, only the error's code (or
    class name) is matched against it. Otherwise an explicit boolean
    ``retryable`` attribute on the error wins; failing that, network-class
    errors are recognized by type and by message pattern (timeouts,
    connection resets, DNS failures, HTTP 429/502/503/504, rate limits).

    Args:
        error: The exception raised by the operation.
        retryable_errors: Optional explicit set of codes/class names.

    Returns:
        True if the operation should be retried.
    """
    if retryable_errors:
        return error_code(error) in retryable_errors or type(error).__name__ in retryable_errors

    explicit = getattr(error, "retryable", None)
    if isinstance(explicit, bool):
        return explicit

    if isinstance(error, _RETRYABLE_TYPES):
        return True

    message = str(error)
    return any(pattern.search(message) for pattern in _RETRYABLE_PATTERNS)


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """Execute ``operation`` with bounded retry and exponential backoff.

    Args:
        operation: Zero-argument callable returning a fresh awaitable for
            every attempt.
        policy: Retry policy; defaults to ``RetryPolicy()``.
        sleep: Awaitable sleep used between attempts.

    Returns:
        The operation's result from the first successful attempt.

    Raises:
        The error of the last attempt once ``max_attempts`` is exhausted,
        or the first non-retryable error, unchanged.
    """
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts:
                log.error(
                    "retry_exhausted",
                    attempts=attempt,
                    error=str(e),
                )
                raise

            if not is_retryable_error(e, policy.retryable_errors):
                log.warning(
                    "non_retryable_error",
                    attempt=attempt,
                    error=str(e),
                )
                raise

            delay = calculate_delay(attempt, policy)
            log.warning(
                "retry_attempt",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(e),
            )

            if policy.on_retry is not None:
                policy.on_retry(e, attempt)

            await sleep(delay)

    # This should never be reached, but satisfy type checker
    raise RuntimeError("Retry logic error")


def async_retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_multiplier: float = 2.0,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Decorator for async functions with exponential backoff retry logic.

    Wraps an async function so every call goes through ``retry()`` with
    the default error classification.

    Args:
        max_attempts: Maximum number of attempts before giving up.
        initial_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound for any single delay.
        backoff_multiplier: Growth factor of the delay.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Example:
        >>> @async_retry(max_attempts=5, initial_delay=0.5)
        ... async def fetch_page(page_id: str) -> dict:
        ...     return await client.get(f"/pages/{page_id}")
    """
    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        backoff_multiplier=backoff_multiplier,
    )

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await retry(lambda: func(*args, **kwargs), policy)

        return wrapper

    return decorator
