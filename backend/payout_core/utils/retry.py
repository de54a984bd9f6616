"""
Bounded backoff for transient transport failures.

Used beneath the HTTP rail adapter and the notification sender. A rail
submission retried here keeps its idempotency key, so the rail sees one
operation however many times the request crosses the wire. Nothing above the
adapters retries: an exhausted retry becomes an ambiguous dispatch that the
reconciliation loop resolves.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Collection, Optional, Tuple, Type

import httpx

from ..core.logging import get_logger

logger = get_logger(__name__)

TRANSPORT_ERRORS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_status_codes: Collection[int] = frozenset({429, 500, 502, 503, 504})
    retryable_exceptions: Tuple[Type[Exception], ...] = field(default=TRANSPORT_ERRORS)

    @property
    def attempts(self) -> int:
        return self.max_retries + 1


class RetryError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the zero-based ``attempt`` failed."""
    backoff = min(config.base_delay * config.exponential_base ** attempt, config.max_delay)
    if not config.jitter:
        return backoff
    return backoff * random.uniform(0.5, 1.5)


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return isinstance(error, config.retryable_exceptions)


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    label: Optional[str] = None,
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)``, retrying transport failures with backoff.

    Non-retryable errors (a 4xx rejection, a malformed response) propagate on
    the first occurrence. When the budget is spent, ``RetryError`` wraps the
    last failure.
    """
    config = config or RetryConfig()
    label = label or getattr(func, "__name__", repr(func))

    attempt = 0
    while True:
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_error(e, config):
                raise
            if attempt + 1 >= config.attempts:
                logger.error("Transport retries exhausted", extra={
                    "call": label,
                    "attempts": config.attempts,
                    "error_type": type(e).__name__,
                    "error": str(e),
                })
                raise RetryError(f"{label} failed after {config.attempts} attempts", e, config.attempts) from e

            delay = calculate_delay(attempt, config)
            logger.warning("Transient transport failure, backing off", extra={
                "call": label,
                "attempt": attempt + 1,
                "max_attempts": config.attempts,
                "error_type": type(e).__name__,
                "delay_seconds": round(delay, 3),
            })
            attempt += 1
            await asyncio.sleep(delay)
            continue

        if attempt:
            logger.info("Transport call recovered", extra={"call": label, "attempt": attempt + 1})
        return result


# Stays well inside rail_submit_timeout_seconds. 500 is left out: a rail that
# errored mid-write answers the status lookup, not a resend.
RAIL_TRANSPORT_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=0.25,
    max_delay=2.0,
    retryable_status_codes=frozenset({429, 502, 503, 504}),
)

NOTIFICATION_RETRY_CONFIG = RetryConfig(max_retries=2, base_delay=0.5, max_delay=5.0)
