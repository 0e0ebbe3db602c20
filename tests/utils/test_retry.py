"""Tests for the backoff helper used by batch writes."""

from __future__ import annotations

import pytest

from tabula_ingestor.utils.retry import RetryConfig, RetryContext, retry_with_backoff


class TestRetryConfig:
    """Test suite for RetryConfig model."""

    def test_defaults(self):
        """Three attempts starting at one second."""
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.max_backoff is None

    def test_delay_doubles_per_attempt(self):
        """Delays follow base * 2^(n-1)."""
        config = RetryConfig(base_delay=0.5)

        assert [config.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        """max_backoff caps the curve."""
        config = RetryConfig(base_delay=1.0, max_backoff=3.0)

        assert config.delay_for(5) == 3.0

    def test_invalid_values(self):
        """Zero attempts and negative delays are rejected."""
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValueError):
            RetryConfig(base_delay=-1)


class TestRetryWithBackoff:
    """Behaviour of retry_with_backoff."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, fake_sleep, sleeps):
        """Two failures then a success sleep 1s then 2s."""
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError("transient")
            return "ok"

        context = RetryContext()
        result = await retry_with_backoff(
            flaky, config=RetryConfig(), context=context, key="op", sleep=fake_sleep
        )

        assert result == "ok"
        assert calls == 3
        assert sleeps == [1.0, 2.0]
        assert context.delays == [1.0, 2.0]
        assert context.attempts_for("op") == 3
        assert context.total_retries == 2

    @pytest.mark.asyncio
    async def test_reraises_last_error_when_exhausted(self, fake_sleep, sleeps):
        """After the final attempt the original exception propagates."""
        calls = 0

        async def always_fails() -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError(f"failure {calls}")

        with pytest.raises(RuntimeError, match="failure 3"):
            await retry_with_backoff(always_fails, config=RetryConfig(), sleep=fake_sleep)

        assert calls == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_run_records_only_slept_delays(self, fake_sleep, sleeps):
        """The final failed attempt adds no delay to the context."""

        async def always_fails() -> None:
            raise RuntimeError("down")

        context = RetryContext()
        with pytest.raises(RuntimeError):
            await retry_with_backoff(
                always_fails, config=RetryConfig(), context=context, key="op", sleep=fake_sleep
            )

        assert sleeps == [1.0, 2.0]
        assert context.delays == [1.0, 2.0]
        assert context.attempts_for("op") == 3

    @pytest.mark.asyncio
    async def test_non_retryable_errors_propagate_immediately(self, fake_sleep, sleeps):
        """The predicate stops retries for errors it rejects."""
        calls = 0

        async def denied() -> None:
            nonlocal calls
            calls += 1
            raise PermissionError("denied")

        with pytest.raises(PermissionError):
            await retry_with_backoff(
                denied,
                config=RetryConfig(),
                should_retry=lambda exc: not isinstance(exc, PermissionError),
                sleep=fake_sleep,
            )

        assert calls == 1
        assert sleeps == []

    def test_context_is_per_run(self):
        """Separate contexts never share counters."""
        first, second = RetryContext(), RetryContext()
        first.record_attempt("batch")
        first.record_attempt("batch")

        assert first.attempts_for("batch") == 2
        assert second.attempts_for("batch") == 0
        first.reset("batch")
        assert first.attempts_for("batch") == 0
