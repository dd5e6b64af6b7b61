"""
Conduit Retry Policy

Bounded retry with deterministic exponential backoff, and the
cooperative cancellation token observed during backoff.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

import structlog

from conduit.errors import (
    CapabilityFailure,
    CapabilityInternalError,
    ExecutionCancelled,
    RetryExhausted,
)
from conduit.types import NO_RETRY, RetryConfig

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared by one execution's suspension points."""

    def __init__(self, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelled(self.execution_id)


async def cancellable_sleep(seconds: float, token: Optional[CancellationToken] = None) -> None:
    """Sleep that ends early with ExecutionCancelled when the token fires."""
    if token is None:
        await asyncio.sleep(seconds)
        return

    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise ExecutionCancelled(token.execution_id)


SleepFn = Callable[[float, Optional[CancellationToken]], Awaitable[None]]
RetryCallback = Callable[[int, CapabilityFailure, float], Any]


class RetryPolicyExecutor:
    """
    Runs one step's capability call under its retry policy.

    Features:
    - Permanent failures propagate on the first occurrence
    - Retryable failures are retried up to policy.attempts
    - Agent-side internal errors are capped tighter than transport errors
    - Delay before retry n is min(delay * multiplier^(n-1), max_delay)
    - Injectable, cancellable sleep
    """

    def __init__(
        self,
        internal_error_max_attempts: int = 2,
        sleep: Optional[SleepFn] = None,
    ):
        self.internal_error_max_attempts = internal_error_max_attempts
        self._sleep = sleep or cancellable_sleep

    @staticmethod
    def delay_for(policy: RetryConfig, retry_number: int) -> float:
        """Delay in milliseconds before the given 1-indexed retry."""
        multiplier = policy.backoff_multiplier if policy.backoff_multiplier else 1.0
        delay = policy.delay * multiplier ** (retry_number - 1)
        if policy.max_delay is not None:
            delay = min(delay, policy.max_delay)
        return delay

    def max_attempts_for(self, policy: RetryConfig, failure: CapabilityFailure) -> int:
        attempts = max(1, policy.attempts)
        if isinstance(failure, CapabilityInternalError):
            return min(attempts, self.internal_error_max_attempts)
        return attempts

    async def run(
        self,
        attempt_fn: Callable[[], Awaitable[Any]],
        policy: Optional[RetryConfig] = None,
        on_retry: Optional[RetryCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        Await attempt_fn until it succeeds or the policy is exhausted.

        Raises:
            CapabilityFailure: a permanent failure, unchanged
            RetryExhausted: every allowed attempt failed retryably
            ExecutionCancelled: the token fired before an attempt or during backoff
        """
        policy = policy or NO_RETRY
        attempt = 0

        while True:
            if token is not None:
                token.raise_if_cancelled()

            attempt += 1
            try:
                return await attempt_fn()

            except CapabilityFailure as failure:
                if not failure.retryable:
                    logger.info(
                        "permanent_failure",
                        code=failure.code,
                        attempt=attempt,
                        error=failure.message,
                    )
                    raise

                if attempt >= self.max_attempts_for(policy, failure):
                    logger.warning(
                        "retries_exhausted",
                        code=failure.code,
                        attempts=attempt,
                        error=failure.message,
                    )
                    raise RetryExhausted(failure, attempt) from failure

                delay_ms = self.delay_for(policy, attempt)
                logger.info(
                    "retry_scheduled",
                    code=failure.code,
                    retry=attempt,
                    delay_ms=delay_ms,
                )

                if on_retry is not None:
                    outcome = on_retry(attempt, failure, delay_ms)
                    if inspect.isawaitable(outcome):
                        await outcome

                await self._sleep(delay_ms / 1000.0, token)
