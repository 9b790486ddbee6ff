"""Retry Executor - Bounded exponential backoff with jitter.

Every outbound call runs through ``RetryExecutor.run``. Transient failures
are retried under the policy; terminal failures and exhaustion are raised
to the caller.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.core.errors import (
    RetryCancelledError,
    RetryExhaustedError,
    TerminalError,
    TransientError,
)
from src.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ErrorClassification = Literal["retryable", "terminal"]

RETRYABLE_STATUS_CODES = frozenset({408, 429})


class RetryPolicy(BaseModel):
    """Backoff parameters supplied by configuration."""

    model_config = ConfigDict(frozen=True)

    base_delay: float = Field(default=0.5, ge=0, description="Delay after the first failure (s)")
    multiplier: float = Field(default=2.0, ge=1, description="Growth factor per attempt")
    max_delay: float = Field(default=30.0, ge=0, description="Upper bound of the base delay (s)")
    max_attempts: int = Field(default=5, ge=1, description="Attempts including the first")
    jitter_fraction: float = Field(default=0.1, ge=0, le=1, description="Relative jitter")

    @model_validator(mode="after")
    def check_bounds(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    def base_delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        return min(self.base_delay * self.multiplier**attempt, self.max_delay)

    def jittered(self, delay: float, rng: random.Random | None = None) -> float:
        """Perturb a delay uniformly within +/- jitter_fraction of it."""
        spread = delay * self.jitter_fraction
        sample = (rng or random).uniform(delay - spread, delay + spread)
        return max(0.0, sample)

    def delays(self) -> list[float]:
        """Base delays between attempts, without jitter."""
        return [self.base_delay_for(i) for i in range(self.max_attempts - 1)]


@dataclass
class RetryAttempt:
    """One failed attempt of a logical operation."""

    operation_id: str
    attempt: int
    classification: ErrorClassification
    error: str
    delay: float | None = None


def classify_error(exc: BaseException) -> ErrorClassification:
    """Decide whether a failure may be retried.

    Args:
        exc: Exception raised by the operation.

    Returns:
        "retryable" for transient faults, "terminal" otherwise.
    """
    if isinstance(exc, TransientError):
        return "retryable"
    if isinstance(exc, TerminalError):
        return "terminal"
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            return "retryable"
        return "terminal"
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return "retryable"
    return "terminal"


class RetryExecutor:
    """Runs async operations under a retry policy.

    Attempt counters live in the call; nothing survives a restart.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            policy: Backoff parameters.
            sleep: Awaitable sleep, replaceable in tests.
            rng: Random source for jitter.
        """
        self.policy = policy
        self._sleep = sleep
        self._rng = rng or random.Random()

    def next_delay(self, attempt: int, error: BaseException) -> float:
        """Jittered delay after a failed attempt, honoring retry_after hints."""
        delay = self.policy.jittered(self.policy.base_delay_for(attempt), self._rng)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    async def _backoff(self, delay: float, cancel_event: asyncio.Event | None) -> None:
        """Sleep for ``delay``, waking early if the cancel event is set."""
        if cancel_event is None:
            await self._sleep(delay)
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """Execute an operation, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt.
            operation_id: Identifier used in logs and errors.
            cancel_event: When set, no further sleep or attempt starts.

        Returns:
            The operation's result.

        Raises:
            RetryExhaustedError: Every allowed attempt failed transiently.
            RetryCancelledError: The cancel event was set between attempts.
            Exception: The original error, when it is terminal.
        """
        attempts: list[RetryAttempt] = []

        for attempt in range(self.policy.max_attempts):
            try:
                return await operation()
            except Exception as e:
                classification = classify_error(e)
                record = RetryAttempt(
                    operation_id=operation_id,
                    attempt=attempt + 1,
                    classification=classification,
                    error=str(e),
                )
                attempts.append(record)

                if classification == "terminal":
                    logger.warning(
                        "operation_failed_terminal",
                        operation_id=operation_id,
                        attempt=attempt + 1,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise

                if attempt + 1 >= self.policy.max_attempts:
                    logger.error(
                        "retry_exhausted",
                        operation_id=operation_id,
                        attempts=len(attempts),
                        error=str(e),
                    )
                    raise RetryExhaustedError(operation_id, attempts, e) from e

                if cancel_event is not None and cancel_event.is_set():
                    raise RetryCancelledError(operation_id, attempts) from e

                record.delay = self.next_delay(attempt, e)
                logger.warning(
                    "retry_scheduled",
                    operation_id=operation_id,
                    attempt=attempt + 1,
                    delay=round(record.delay, 3),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._backoff(record.delay, cancel_event)

                if cancel_event is not None and cancel_event.is_set():
                    raise RetryCancelledError(operation_id, attempts) from e

        # max_attempts >= 1, the loop always returns or raises
        raise AssertionError("unreachable")
