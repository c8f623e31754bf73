"""
Reusable retry-with-backoff policy.

Each call site (page extraction, embedding batches) builds a RetryPolicy with
its own attempt budget, backoff schedule and retryable-error predicate, then
wraps a zero-argument coroutine factory::

    policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(2.0))
    text = await policy.run(lambda: service.extract_page(image), label="page 3")

Attempts are numbered from 1. The backoff callable receives the number of the
attempt that just failed plus the error it raised, and returns the number of
seconds to wait before the next attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from docrag.core.exceptions import OperationCancelled, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Backoff = Callable[[int, BaseException], float]

# Exception class names that will never succeed on a second try
_NON_RETRYABLE_ERROR_NAMES: frozenset[str] = frozenset(
    {
        "AuthenticationError",
        "PermissionDeniedError",
        "InvalidRequestError",
    }
)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def is_rate_limit_error(exc: BaseException) -> bool:
    """True for provider rate-limit errors (typed or inferred from the message)."""
    if type(exc).__name__ == "RateLimitError":
        return True
    message = str(exc).lower()
    return "rate" in message or "429" in message


def is_retryable_error(exc: BaseException) -> bool:
    return type(exc).__name__ not in _NON_RETRYABLE_ERROR_NAMES


def _always_retry(exc: BaseException) -> bool:
    return True


# ---------------------------------------------------------------------------
# Backoff schedules
# ---------------------------------------------------------------------------

def exponential_backoff(base_delay: float, max_delay: float = 60.0) -> Backoff:
    """base, 2*base, 4*base ... capped at max_delay."""
    def _delay(attempt: int, exc: BaseException) -> float:
        return min(base_delay * (2 ** (attempt - 1)), max_delay)
    return _delay


def rate_limit_aware_backoff(base_delay: float, max_delay: float = 60.0) -> Backoff:
    """
    Longer waits for rate limits (base * 2**attempt), linear otherwise
    (base * attempt).
    """
    def _delay(attempt: int, exc: BaseException) -> float:
        if is_rate_limit_error(exc):
            return min(base_delay * (2 ** attempt), max_delay)
        return min(base_delay * attempt, max_delay)
    return _delay


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_attempts: Total attempts including the first one.
        backoff:      Delay schedule between attempts.
        retryable:    Predicate; errors it rejects are re-raised immediately.
        sleep:        Awaitable sleep (injectable so tests do not wait).
    """
    max_attempts: int                                   = 3
    backoff:      Backoff                               = field(default_factory=lambda: exponential_backoff(1.0))
    retryable:    Callable[[BaseException], bool]       = _always_retry
    sleep:        Callable[[float], Awaitable[None]] | None = None

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str = "operation",
    ) -> T:
        """
        Await ``operation()`` until it succeeds or attempts run out.

        Raises:
            RetryExhaustedError: after the final failed attempt (chained to the
                last underlying error).
            OperationCancelled: propagated untouched, never retried.
            Any non-retryable error: propagated untouched on first sight.
        """
        sleep = self.sleep or asyncio.sleep
        attempts = max(1, self.max_attempts)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except OperationCancelled:
                raise
            except Exception as exc:
                if not self.retryable(exc):
                    logger.error("Retry | %s non-retryable %s: %s", label, type(exc).__name__, exc)
                    raise
                last_error = exc
                if attempt >= attempts:
                    break
                delay = self.backoff(attempt, exc)
                logger.warning(
                    "Retry | %s attempt=%d/%d delay=%.1fs error=%s",
                    label, attempt, attempts, delay, exc,
                )
                await sleep(delay)

        assert last_error is not None
        raise RetryExhaustedError(label, attempts, last_error) from last_error
