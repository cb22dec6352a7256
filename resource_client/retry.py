"""Retry with exponential backoff for provider API calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from resource_client.errors import ProviderCallError

logger = structlog.get_logger()

T = TypeVar("T")

RETRYABLE_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "InternalFailure",
    }
)

RETRYABLE_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
    ConnectTimeoutError,
    ConnectionResetError,
)

NETWORK_RESET_MARKERS = ("ECONNRESET", "Connection reset", "socket hang up")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the 0-based ``attempt`` failed."""
        return min(self.base_delay * (2**attempt), self.max_delay)


def is_retryable(error: BaseException) -> bool:
    """Throttling, transient unavailability, internal errors and network resets."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code in RETRYABLE_CODES:
            return True
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True
    message = str(error)
    return any(marker in message for marker in NETWORK_RESET_MARKERS)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    operation: str,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` up to ``policy.max_attempts`` times.

    Non-retryable errors fail immediately. The final failure is raised as a
    ``ProviderCallError`` naming the operation, chained to the last error.
    """
    attempt = 0
    while True:
        try:
            result = await fn()
            if attempt > 0:
                await logger.ainfo("Provider call succeeded on retry", operation=operation, retry=attempt)
            return result
        except Exception as e:
            retryable = is_retryable(e)
            if not retryable or attempt >= policy.max_attempts - 1:
                await logger.aerror(
                    "Provider call failed",
                    operation=operation,
                    attempts=attempt + 1,
                    retryable=retryable,
                    error=str(e),
                )
                raise ProviderCallError(operation, attempt + 1, e) from e

            delay = policy.delay_for(attempt)
            await logger.awarning(
                "Provider call failed, retrying",
                operation=operation,
                attempt=attempt + 1,
                delay_s=delay,
                error=str(e),
            )
            await sleep(delay)
            attempt += 1
