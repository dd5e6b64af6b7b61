"""
Tests for the retry policy executor and cancellation token.
"""

import asyncio

import pytest

from conduit.errors import (
    CapabilityInternalError,
    CapabilityRejected,
    CapabilityTimeout,
    CapabilityUnreachable,
    ExecutionCancelled,
    RetryExhausted,
)
from conduit.execution.retry import CancellationToken, RetryPolicyExecutor, cancellable_sleep
from conduit.types import RetryConfig


class FailingCall:
    """Attempt function failing with the given errors, then returning a value."""

    def __init__(self, *failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class TestBackoff:
    """Tests for delay computation."""

    def test_exponential_delays(self):
        """Test the k-th retry delay is delay * multiplier^(k-1)."""
        policy = RetryConfig(attempts=4, delay=1000, backoff_multiplier=2)

        assert [RetryPolicyExecutor.delay_for(policy, k) for k in (1, 2, 3)] == [1000, 2000, 4000]

    def test_max_delay_caps(self):
        """Test maxDelay caps the backoff."""
        policy = RetryConfig(attempts=5, delay=1000, backoff_multiplier=2, max_delay=3000)

        assert [RetryPolicyExecutor.delay_for(policy, k) for k in (1, 2, 3, 4)] == [1000, 2000, 3000, 3000]

    def test_constant_delay_without_multiplier(self):
        """Test a missing multiplier keeps the delay constant."""
        policy = RetryConfig(attempts=3, delay=500)

        assert RetryPolicyExecutor.delay_for(policy, 1) == 500
        assert RetryPolicyExecutor.delay_for(policy, 2) == 500


class TestRetryPolicyExecutor:
    """Tests for retry execution."""

    @pytest.mark.asyncio
    async def test_success_after_retries(self, sleep_recorder):
        """Test retryable failures are retried with backoff."""
        executor = RetryPolicyExecutor(sleep=sleep_recorder)
        call = FailingCall(CapabilityUnreachable("down"), CapabilityTimeout("slow"))
        retries = []

        result = await executor.run(
            call,
            RetryConfig(attempts=3, delay=1000, backoff_multiplier=2),
            on_retry=lambda n, failure, delay: retries.append((n, failure.code, delay)),
        )

        assert result == "ok"
        assert call.calls == 3
        assert sleep_recorder.calls == [1.0, 2.0]
        assert retries == [(1, "Unreachable", 1000), (2, "Timeout", 2000)]

    @pytest.mark.asyncio
    async def test_attempt_bound(self, sleep_recorder):
        """Test the call count never exceeds the attempt limit."""
        executor = RetryPolicyExecutor(sleep=sleep_recorder)
        call = FailingCall(*[CapabilityUnreachable("down") for _ in range(10)])

        with pytest.raises(RetryExhausted) as exc_info:
            await executor.run(call, RetryConfig(attempts=4, delay=100, backoff_multiplier=2, max_delay=250))

        assert call.calls == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.last_failure.code == "Unreachable"
        assert sleep_recorder.calls == [0.1, 0.2, 0.25]

    @pytest.mark.asyncio
    async def test_no_policy_means_one_attempt(self, sleep_recorder):
        """Test a step without retry policy is attempted once."""
        executor = RetryPolicyExecutor(sleep=sleep_recorder)
        call = FailingCall(CapabilityUnreachable("down"))

        with pytest.raises(RetryExhausted):
            await executor.run(call)

        assert call.calls == 1
        assert sleep_recorder.calls == []

    @pytest.mark.asyncio
    async def test_permanent_failure_propagates(self, sleep_recorder):
        """Test a rejection is raised unchanged on the first attempt."""
        executor = RetryPolicyExecutor(sleep=sleep_recorder)
        call = FailingCall(CapabilityRejected("bad"))

        with pytest.raises(CapabilityRejected):
            await executor.run(call, RetryConfig(attempts=5, delay=10))

        assert call.calls == 1
        assert sleep_recorder.calls == []

    @pytest.mark.asyncio
    async def test_internal_error_cap(self, sleep_recorder):
        """Test internal errors stop at the configured cap."""
        executor = RetryPolicyExecutor(internal_error_max_attempts=2, sleep=sleep_recorder)
        call = FailingCall(*[CapabilityInternalError("crash") for _ in range(5)])

        with pytest.raises(RetryExhausted) as exc_info:
            await executor.run(call, RetryConfig(attempts=5, delay=10))

        assert call.calls == 2
        assert exc_info.value.last_failure.code == "InternalError"

    @pytest.mark.asyncio
    async def test_cancelled_before_attempt(self, sleep_recorder):
        """Test a fired token stops the executor before any attempt."""
        executor = RetryPolicyExecutor(sleep=sleep_recorder)
        token = CancellationToken("exec-1")
        token.cancel()
        call = FailingCall()

        with pytest.raises(ExecutionCancelled):
            await executor.run(call, RetryConfig(attempts=3), token=token)

        assert call.calls == 0


class TestCancellation:
    """Tests for the cancellation token and cancellable sleep."""

    @pytest.mark.asyncio
    async def test_sleep_without_cancel(self):
        """Test the sleep returns normally when nothing fires."""
        token = CancellationToken()

        await cancellable_sleep(0.01, token)

        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self):
        """Test cancelling the token ends a backoff sleep early."""
        token = CancellationToken("exec-1")
        task = asyncio.create_task(cancellable_sleep(10, token))
        await asyncio.sleep(0)

        token.cancel()

        with pytest.raises(ExecutionCancelled):
            await asyncio.wait_for(task, timeout=1.0)

    def test_raise_if_cancelled(self):
        """Test the token check."""
        token = CancellationToken("exec-1")
        token.raise_if_cancelled()

        token.cancel()

        assert token.cancelled
        with pytest.raises(ExecutionCancelled) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.execution_id == "exec-1"
