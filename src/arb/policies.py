"""
Bounded retry policies.

Every retrying call site (leg submission, cancels, fill verification, unwind
exits) goes through a RetryPolicy so attempts and backoff are explicit and
finite. Each attempt is also bounded by a timeout.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exchanges.base import TransientGatewayError

logger = logging.getLogger(__name__)


class CallTimeout(TransientGatewayError):
    """Raised when an exchange call exceeds its timeout."""

    pass


class PendingCallTimeout(CallTimeout):
    """
    Raised when a call times out but keeps running.

    `pending` resolves with the call's late result (or its exception).
    """

    def __init__(self, message: str, pending: asyncio.Future):
        super().__init__(message)
        self.pending = pending


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt limit and exponential backoff for one kind of call.

    Attributes:
        max_attempts: Total attempts, including the first
        min_wait: Minimum backoff between attempts (seconds)
        max_wait: Maximum backoff between attempts (seconds)
        multiplier: Exponential backoff multiplier
        retry_on: Exception types that are retried
        never_retry: Subtypes of retry_on that are raised at once
    """

    max_attempts: int = 3
    min_wait: float = 0.25
    max_wait: float = 2.0
    multiplier: float = 0.5
    retry_on: tuple = (TransientGatewayError,)
    never_retry: tuple = ()

    def retrying(self, operation: str = "call") -> AsyncRetrying:
        def _log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(f"{operation} attempt {state.attempt_number}/{self.max_attempts} failed: {error}")

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(self.retry_on) & retry_if_not_exception_type(self.never_retry),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        operation: str = "call",
        **kwargs,
    ) -> Any:
        """
        Await `func(*args, **kwargs)` under this policy.

        Raises:
            The last exception once attempts are exhausted, or any
            non-retryable exception immediately.
        """
        async for attempt in self.retrying(operation):
            with attempt:
                return await func(*args, **kwargs)


async def bounded_call(func: Callable[..., Any], *args, timeout: float, operation: str = "call") -> Any:
    """
    Run a blocking gateway call in a worker thread, bounded by `timeout`.

    Raises:
        CallTimeout: If the call does not complete in time
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise CallTimeout(f"{operation} timed out after {timeout}s") from e


async def bounded_submit(func: Callable[..., Any], *args, timeout: float, operation: str = "call") -> Any:
    """
    Like bounded_call, for calls that must not be lost on timeout.

    The worker thread cannot be stopped, so a timed-out call is handed back
    still running and its late acknowledgement can be reconciled.

    Raises:
        PendingCallTimeout: If the call does not complete in time
    """
    pending = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.wait_for(asyncio.shield(pending), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise PendingCallTimeout(f"{operation} timed out after {timeout}s", pending) from e


def policy_for(max_attempts: int, backoff: float = 0.5, never_retry: tuple = ()) -> RetryPolicy:
    """Policy with the given attempt limit; backoff=0 retries immediately."""
    return RetryPolicy(
        max_attempts=max_attempts,
        min_wait=0.0,
        max_wait=backoff * 4,
        multiplier=backoff,
        never_retry=never_retry,
    )
