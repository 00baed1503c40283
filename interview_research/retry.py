"""Shared retry policy for every component that calls an external service."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransientNetworkError

logger = logging.getLogger("uvicorn.error")

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientNetworkError):
        return True
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    sleep_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Retry attempt %s after %.2fs: %s",
        retry_state.attempt_number,
        sleep_s,
        exc,
    )


def retry_policy(max_retries: int = 2, initial_delay: float = 1.0) -> AsyncRetrying:
    """Exponential backoff: waits ``initial_delay * 2**attempt`` between attempts.

    ``max_retries`` counts retries, so the call is made ``max_retries + 1`` times.
    Only transient failures are retried; the last exception is re-raised.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(0, max_retries) + 1),
        wait=wait_exponential(multiplier=initial_delay, exp_base=2),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        reraise=True,
    )


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 2,
    initial_delay: float = 1.0,
    policy: Optional[AsyncRetrying] = None,
    **kwargs: Any,
) -> T:
    retrying = policy or retry_policy(max_retries=max_retries, initial_delay=initial_delay)
    async for attempt in retrying:
        with attempt:
            return await fn(*args, **kwargs)
    raise RuntimeError("retry policy exited without a result")
