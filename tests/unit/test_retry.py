"""
Unit tests for retry with exponential backoff.

Tests cover:
- Success after k transient failures
- Immediate propagation of non-transient errors
- Exhaustion of attempts
- Backoff delay schedule
- Error classification by code and message
"""

import pytest

from bizcard.cardcore.concurrency import retry as retry_module
from bizcard.cardcore.concurrency.retry import (
    DATABASE_POLICY,
    OPTIMISTIC_LOCK_POLICY,
    RetryPolicy,
    retrying,
    with_retry,
)
from bizcard.cardcore.config import RetryConfig
from bizcard.cardcore.errors import ErrorCode, StoreError, VersionConflictError


class FlakyOperation:
    """Fails with `error` for the first `failures` calls, then returns `value`."""

    def __init__(self, failures: int, error: Exception, value: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


@pytest.fixture
def sleeps(monkeypatch):
    """Record backoff delays instead of sleeping."""
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(retry_module.asyncio, "sleep", fake_sleep)
    return delays


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [0, 1, 2])
    async def test_succeeds_after_k_transient_failures(self, sleeps, failures):
        """k < max_attempts transient failures: result returned after k+1 calls."""
        op = FlakyOperation(
            failures, StoreError("deadlock", code=ErrorCode.DEADLOCK_DETECTED.value)
        )

        result = await with_retry(op, RetryPolicy(max_attempts=3))

        assert result == "ok"
        assert op.calls == failures + 1
        assert len(sleeps) == failures

    @pytest.mark.asyncio
    async def test_non_transient_error_propagates_after_one_call(self, sleeps):
        """Errors outside the transient set are not retried."""
        error = StoreError("permission denied", code=ErrorCode.INSUFFICIENT_PRIVILEGE.value)
        op = FlakyOperation(5, error)

        with pytest.raises(StoreError) as exc_info:
            await with_retry(op, RetryPolicy(max_attempts=5))

        assert exc_info.value is error
        assert op.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_plain_exception_is_not_retried(self, sleeps):
        op = FlakyOperation(1, KeyError("missing"))

        with pytest.raises(KeyError):
            await with_retry(op)

        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_last_error(self, sleeps):
        """After max_attempts transient failures the last error propagates."""
        error = StoreError("busy", code=ErrorCode.SERIALIZATION_FAILURE.value)
        op = FlakyOperation(10, error)

        with pytest.raises(StoreError) as exc_info:
            await with_retry(op, RetryPolicy(max_attempts=4))

        assert exc_info.value is error
        assert op.calls == 4
        assert len(sleeps) == 3

    @pytest.mark.asyncio
    async def test_delay_schedule(self, sleeps):
        """Delays grow by backoff_factor and are capped at max_delay."""
        policy = RetryPolicy(max_attempts=5, initial_delay=0.1, max_delay=0.5, backoff_factor=2.0)
        op = FlakyOperation(4, StoreError("x", code=ErrorCode.UNIQUE_VIOLATION.value))

        await with_retry(op, policy)

        assert sleeps == pytest.approx([0.1, 0.2, 0.4, 0.5])

    @pytest.mark.asyncio
    async def test_jitter_adds_bounded_delay(self, sleeps):
        policy = RetryPolicy(max_attempts=2, initial_delay=0.1, jitter=0.05)
        op = FlakyOperation(1, StoreError("x", code=ErrorCode.UNIQUE_VIOLATION.value))

        await with_retry(op, policy)

        assert 0.1 <= sleeps[0] <= 0.15

    @pytest.mark.asyncio
    async def test_single_attempt_policy_never_sleeps(self, sleeps):
        op = FlakyOperation(1, StoreError("x", code=ErrorCode.UNIQUE_VIOLATION.value))

        with pytest.raises(StoreError):
            await with_retry(op, RetryPolicy(max_attempts=1))

        assert op.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            await with_retry(FlakyOperation(0, KeyError()), RetryPolicy(max_attempts=0))

    @pytest.mark.asyncio
    async def test_decorator(self, sleeps):
        calls = []

        @retrying(RetryPolicy(max_attempts=3))
        async def save(value):
            calls.append(value)
            if len(calls) < 2:
                raise VersionConflictError(current_version=2, expected_version=1)
            return value * 2

        assert await save(21) == 42
        assert calls == [21, 21]


class TestRetryPolicy:
    """Tests for RetryPolicy classification and presets."""

    @pytest.mark.parametrize(
        "code",
        [
            ErrorCode.UNIQUE_VIOLATION,
            ErrorCode.NO_ROWS,
            ErrorCode.SERIALIZATION_FAILURE,
            ErrorCode.DEADLOCK_DETECTED,
            ErrorCode.VERSION_CONFLICT,
        ],
    )
    def test_default_transient_codes(self, code):
        assert DATABASE_POLICY.is_transient(StoreError("x", code=code.value))

    @pytest.mark.parametrize(
        "message",
        [
            "Version conflict detected",
            "duplicate key value violates UNIQUE CONSTRAINT",
            "deadlock detected",
            "could not serialize access due to concurrent update",
        ],
    )
    def test_transient_by_message(self, message):
        assert DATABASE_POLICY.is_transient(RuntimeError(message))

    def test_terminal_errors(self):
        assert not DATABASE_POLICY.is_transient(ValueError("bad input"))
        assert not DATABASE_POLICY.is_transient(
            StoreError("denied", code=ErrorCode.INSUFFICIENT_PRIVILEGE.value)
        )

    def test_optimistic_lock_policy_only_retries_conflicts(self):
        assert OPTIMISTIC_LOCK_POLICY.is_transient(VersionConflictError(current_version=3))
        assert OPTIMISTIC_LOCK_POLICY.is_transient(
            StoreError("no rows", code=ErrorCode.NO_ROWS.value)
        )
        assert not OPTIMISTIC_LOCK_POLICY.is_transient(
            StoreError("deadlock", code=ErrorCode.DEADLOCK_DETECTED.value)
        )

    def test_preset_values(self):
        assert (DATABASE_POLICY.max_attempts, DATABASE_POLICY.initial_delay) == (3, 0.1)
        assert (DATABASE_POLICY.max_delay, DATABASE_POLICY.backoff_factor) == (2.0, 2.0)
        assert (OPTIMISTIC_LOCK_POLICY.max_attempts, OPTIMISTIC_LOCK_POLICY.initial_delay) == (
            5,
            0.05,
        )
        assert (OPTIMISTIC_LOCK_POLICY.max_delay, OPTIMISTIC_LOCK_POLICY.backoff_factor) == (
            1.0,
            1.5,
        )

    def test_without_conflicts(self):
        policy = DATABASE_POLICY.without_conflicts()

        assert not policy.is_transient(VersionConflictError(current_version=2))
        assert policy.is_transient(StoreError("x", code=ErrorCode.UNIQUE_VIOLATION.value))
        assert policy.max_attempts == DATABASE_POLICY.max_attempts

    def test_from_config(self):
        policy = RetryPolicy.from_config(
            RetryConfig(max_attempts=4, initial_delay_ms=250, max_delay_ms=1000, backoff_factor=3.0)
        )

        assert policy.max_attempts == 4
        assert policy.initial_delay == 0.25
        assert policy.max_delay == 1.0
        assert policy.delay_for(2) == 0.75
