# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Retry strategies applied at the stage-invocation boundary.

The engine never retries on its own. A strategy can be attached to a single
node (``StateGraph.add_node(..., retry=...)``) or to a whole compiled graph,
and wraps only the stage call, so routing and checkpointing are unaffected.

Example:
    from switchboard.core.retry import ExponentialBackoffStrategy

    graph.add_node(
        Stage.BILLING_SUPPORT,
        billing_support,
        retry=ExponentialBackoffStrategy(max_attempts=3, base_delay=0.5),
    )
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from switchboard.core.errors import ExternalCallFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryContext:
    """Tracks attempts and failures of one retriable operation."""

    attempt: int = 0
    max_attempts: int = 3
    start_time: float = field(default_factory=time.time)
    last_exception: Optional[BaseException] = None
    exceptions: list[BaseException] = field(default_factory=list)
    total_delay: float = 0.0

    @property
    def elapsed(self) -> float:
        """Time elapsed since first attempt."""
        return time.time() - self.start_time

    def record_exception(self, exc: BaseException) -> None:
        self.last_exception = exc
        self.exceptions.append(exc)

    def record_delay(self, delay: float) -> None:
        self.total_delay += delay


class BaseRetryStrategy(ABC):
    """Decides whether and when to retry a failed attempt."""

    max_attempts: int = 1

    @abstractmethod
    def should_retry(self, context: RetryContext) -> bool:
        """Determine if another attempt should be made.

        Args:
            context: Current retry context with attempt info

        Returns:
            True if should retry, False to give up
        """

    @abstractmethod
    def get_delay(self, context: RetryContext) -> float:
        """Seconds to wait before the next attempt."""

    def on_retry(self, context: RetryContext) -> None:  # noqa: B027
        """Hook called before each retry attempt."""


class ExponentialBackoffStrategy(BaseRetryStrategy):
    """Exponential backoff with optional jitter.

    Only retries ``ExternalCallFailure`` instances that report themselves as
    retryable (timeouts, 429, 5xx). Decode errors, routing errors and
    interrupts always propagate on the first attempt.

    Delay formula: min(max_delay, base_delay * (multiplier ^ attempt)) * (1 +/- jitter)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
        retryable_exceptions: tuple[type[BaseException], ...] = (ExternalCallFailure,),
    ):
        """Initialize exponential backoff strategy.

        Args:
            max_attempts: Maximum number of attempts (including initial)
            base_delay: Initial delay in seconds
            max_delay: Maximum delay cap in seconds
            multiplier: Exponential multiplier (default 2.0 = doubling)
            jitter: Random jitter factor (0.1 = +/-10% randomness)
            retryable_exceptions: Exception types eligible for retry
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions

    def should_retry(self, context: RetryContext) -> bool:
        if context.attempt >= self.max_attempts:
            return False

        exc = context.last_exception
        if exc is None:
            return True
        if not isinstance(exc, self.retryable_exceptions):
            return False
        return bool(getattr(exc, "retryable", True))

    def get_delay(self, context: RetryContext) -> float:
        delay = self.base_delay * (self.multiplier ** (context.attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_amount = delay * self.jitter
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)

    def on_retry(self, context: RetryContext) -> None:
        logger.warning(
            f"Retry attempt {context.attempt + 1}/{self.max_attempts} "
            f"after error: {context.last_exception}"
        )


class NoRetryStrategy(BaseRetryStrategy):
    """Fail immediately on the first error."""

    def should_retry(self, context: RetryContext) -> bool:
        return False

    def get_delay(self, context: RetryContext) -> float:
        return 0.0


class RetryExecutor:
    """Runs an async callable under a retry strategy.

    Unlike a result wrapper, the last exception is re-raised once the
    strategy gives up, so callers keep the original error type.
    """

    def __init__(self, strategy: Optional[BaseRetryStrategy] = None):
        self.strategy = strategy or NoRetryStrategy()

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        context = RetryContext(max_attempts=self.strategy.max_attempts)

        while True:
            context.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                context.record_exception(e)
                if not self.strategy.should_retry(context):
                    raise

                self.strategy.on_retry(context)
                delay = self.strategy.get_delay(context)
                context.record_delay(delay)
                if delay > 0:
                    await asyncio.sleep(delay)


__all__ = [
    "RetryContext",
    "BaseRetryStrategy",
    "ExponentialBackoffStrategy",
    "NoRetryStrategy",
    "RetryExecutor",
]
