"""
Retry with exponential backoff for CardCore store operations.

Transient store contention (serialization failures, deadlocks, unique-index
races, version conflicts) is absorbed here so call sites do not hand-roll
retry loops.

Invariants:
    - The operation is invoked at most policy.max_attempts times
    - The delay before attempt n+1 is min(initial_delay * factor^(n-1), max_delay)
    - Non-transient errors propagate after a single invocation
    - The last failure always propagates unchanged; nothing is swallowed

How to change safely:
    - Adding a transient code widens what is retried for every caller
    - Keep OPTIMISTIC_LOCK_POLICY finer-grained than DATABASE_POLICY
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, TypeVar

from ..errors import ErrorCode

if TYPE_CHECKING:
    from ..config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TRANSIENT_CODES: frozenset[str] = frozenset(
    {
        ErrorCode.UNIQUE_VIOLATION.value,
        ErrorCode.NO_ROWS.value,
        ErrorCode.SERIALIZATION_FAILURE.value,
        ErrorCode.DEADLOCK_DETECTED.value,
        ErrorCode.VERSION_CONFLICT.value,
    }
)

DEFAULT_TRANSIENT_MESSAGES: tuple[str, ...] = (
    "version conflict",
    "unique constraint",
    "deadlock",
    "serialization failure",
    "could not serialize",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy for with_retry.

    Attributes:
        max_attempts: Maximum invocations of the operation
        initial_delay: Seconds to wait before the second attempt
        max_delay: Cap for any single delay, in seconds
        backoff_factor: Delay multiplier applied after each retry
        transient_codes: Error codes that are worth retrying
        transient_messages: Lower-case message fragments that are worth retrying
        jitter: Upper bound of random seconds added to each delay
    """

    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    backoff_factor: float = 2.0
    transient_codes: frozenset[str] = DEFAULT_TRANSIENT_CODES
    transient_messages: tuple[str, ...] = DEFAULT_TRANSIENT_MESSAGES
    jitter: float = 0.0

    @classmethod
    def from_config(cls, config: RetryConfig, **overrides) -> RetryPolicy:
        """Build a policy from a RetryConfig section."""
        values = {
            "max_attempts": config.max_attempts,
            "initial_delay": config.initial_delay_ms / 1000.0,
            "max_delay": config.max_delay_ms / 1000.0,
            "backoff_factor": config.backoff_factor,
        }
        values.update(overrides)
        return cls(**values)

    def without_conflicts(self) -> RetryPolicy:
        """Same policy, but version conflicts are terminal."""
        return replace(
            self,
            transient_codes=self.transient_codes - {ErrorCode.VERSION_CONFLICT.value},
            transient_messages=tuple(
                m for m in self.transient_messages if m != "version conflict"
            ),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based), without jitter."""
        return min(self.initial_delay * self.backoff_factor ** (attempt - 1), self.max_delay)

    def is_transient(self, error: BaseException) -> bool:
        """Classify an error as transient (worth retrying) or terminal."""
        code = getattr(error, "code", None)
        if code is not None and str(code) in self.transient_codes:
            return True

        message = getattr(error, "message", None) or str(error)
        message = message.lower()
        return any(fragment in message for fragment in self.transient_messages)


DATABASE_POLICY = RetryPolicy(
    max_attempts=3,
    initial_delay=0.1,
    max_delay=2.0,
    backoff_factor=2.0,
)

OPTIMISTIC_LOCK_POLICY = RetryPolicy(
    max_attempts=5,
    initial_delay=0.05,
    max_delay=1.0,
    backoff_factor=1.5,
    transient_codes=frozenset({ErrorCode.NO_ROWS.value, ErrorCode.VERSION_CONFLICT.value}),
    transient_messages=("version conflict",),
)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    operation_name: str = "operation",
) -> T:
    """Invoke `operation`, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument coroutine function to invoke
        policy: Retry policy (DATABASE_POLICY if omitted)
        operation_name: Name used in retry log records

    Returns:
        The operation's result from the first successful attempt

    Raises:
        Exception: The first non-transient error, or the last transient one
            once attempts are exhausted
    """
    policy = policy or DATABASE_POLICY
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not policy.is_transient(e):
                raise

            delay = policy.delay_for(attempt)
            if policy.jitter:
                delay += random.uniform(0, policy.jitter)

            logger.warning(
                f"Retry attempt {attempt}/{policy.max_attempts} for {operation_name} "
                f"after error: {e}",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "error_code": getattr(e, "code", None),
                    "error_type": type(e).__name__,
                    "delay_seconds": delay,
                },
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")


def retrying(
    policy: RetryPolicy | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of with_retry for async functions.

    Usage:
        @retrying(OPTIMISTIC_LOCK_POLICY)
        async def save(...):
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                policy,
                operation_name=func.__qualname__,
            )

        return wrapper

    return decorator
