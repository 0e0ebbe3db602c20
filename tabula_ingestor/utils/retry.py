"""Async retry utilities for backend writes."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar, cast

from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class RetryConfig(BaseModel):
    """Configuration object describing backoff behaviour for one operation."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_backoff: float | None = Field(default=None, gt=0)

    def delay_for(self, attempt_number: int) -> float:
        """Return the delay that follows the given 1-based failed attempt."""

        delay = self.base_delay * (2 ** (max(attempt_number, 1) - 1))
        if self.max_backoff is not None:
            delay = min(delay, self.max_backoff)
        return max(delay, 0.0)

    def describe(self) -> dict[str, Any]:
        """Return a serialisable summary useful for logging/metrics."""

        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_backoff": self.max_backoff,
        }


@dataclass
class RetryContext:
    """Retry bookkeeping owned by a single ingestion run.

    The caller creates one context per run and discards it afterwards, so
    retry counters never leak between files or requests.
    """

    attempts: dict[str, int] = field(default_factory=dict)
    delays: list[float] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    def record_attempt(self, key: str) -> int:
        count = self.attempts.get(key, 0) + 1
        self.attempts[key] = count
        return count

    def record_delay(self, delay: float) -> None:
        self.delays.append(delay)

    def attempts_for(self, key: str) -> int:
        return self.attempts.get(key, 0)

    def reset(self, key: str) -> None:
        self.attempts.pop(key, None)

    @property
    def total_retries(self) -> int:
        return sum(max(count - 1, 0) for count in self.attempts.values())


def _wait_strategy(config: RetryConfig) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        return config.delay_for(retry_state.attempt_number)

    return _wait


def _before_sleep(
    context: RetryContext | None, log_hook: Callable[[RetryCallState], None]
) -> Callable[[RetryCallState], None]:
    """Record the delay tenacity is about to sleep, then log it.

    Only delays that are actually slept reach the context; the final attempt
    never sleeps.
    """

    def _hook(retry_state: RetryCallState) -> None:
        if context is not None and retry_state.next_action is not None:
            context.record_delay(retry_state.next_action.sleep)
        log_hook(retry_state)

    return _hook


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    config: RetryConfig,
    should_retry: Callable[[BaseException], bool] | None = None,
    context: RetryContext | None = None,
    key: str = "default",
    sleep: SleepFn | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> T:
    """Run ``operation`` with exponential backoff between failed attempts.

    Args:
        operation: Zero-argument coroutine factory executed once per attempt.
        config: Attempt budget and delay curve.
        should_retry: Predicate deciding whether an exception is retryable.
            Non-retryable exceptions propagate immediately.
        context: Optional per-run tracking object receiving attempt counts and delays.
        key: Identifier the attempts are recorded under in ``context``.
        sleep: Awaitable sleep used between attempts (injectable for tests).
        log: Logger receiving the before-sleep warnings.

    Returns:
        The result of the first successful attempt.

    Raises:
        The last exception raised by ``operation`` once attempts are exhausted.
    """

    logger_to_use = log or logger
    if isinstance(logger_to_use, logging.LoggerAdapter):
        sleep_logger = cast(logging.Logger, logger_to_use.logger)
    else:
        sleep_logger = logger_to_use

    predicate = should_retry or (lambda exc: isinstance(exc, Exception))

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=_wait_strategy(config),
        retry=retry_if_exception(predicate),
        before_sleep=_before_sleep(context, before_sleep_log(sleep_logger, logging.WARNING)),
        sleep=sleep or asyncio.sleep,
        reraise=True,
    ):
        with attempt:
            if context is not None:
                context.record_attempt(key)
            return await operation()

    raise RuntimeError("Retry loop exited without producing a result")  # pragma: no cover
