# tests/unit/engine/test_retry.py
"""Tests for RetryManager and RetryConfig."""

import pytest


def _no_sleep(_seconds: float) -> None:
    return None


class TestRetryConfig:
    def test_default_is_single_attempt(self) -> None:
        from tokensim.engine.retry import RetryConfig

        assert RetryConfig().max_attempts == 1
        assert RetryConfig.no_retry().max_attempts == 1

    def test_rejects_zero_attempts(self) -> None:
        from tokensim.engine.retry import RetryConfig

        with pytest.raises(ValueError, match="max_attempts"):
            RetryConfig(max_attempts=0)

    def test_for_action_counts_retries_not_attempts(self) -> None:
        """retry_count=2 means one try plus two retries."""
        from tokensim.engine.retry import RetryConfig

        assert RetryConfig.for_action(2).max_attempts == 3

    def test_for_action_clamps_negative_retry_count(self) -> None:
        from tokensim.engine.retry import RetryConfig

        assert RetryConfig.for_action(-4).max_attempts == 1

    def test_for_action_uses_settings_backoff(self) -> None:
        from tokensim.core.config import RetrySettings
        from tokensim.engine.retry import RetryConfig

        settings = RetrySettings(initial_delay_seconds=0.5, max_delay_seconds=2.0, jitter_seconds=0.0, exponential_base=3.0)
        config = RetryConfig.for_action(1, settings)

        assert config.max_attempts == 2
        assert config.base_delay == 0.5
        assert config.max_delay == 2.0
        assert config.jitter == 0.0
        assert config.exponential_base == 3.0


class TestRetryManager:
    def test_success_on_first_attempt(self) -> None:
        from tokensim.engine.retry import RetryConfig, RetryManager

        manager = RetryManager(RetryConfig(max_attempts=3), sleep=_no_sleep)
        assert manager.execute_with_retry(lambda: "ok", is_retryable=lambda e: True) == "ok"

    def test_retries_until_success(self) -> None:
        from tokensim.engine.retry import RetryConfig, RetryManager

        calls: list[int] = []
        retries: list[int] = []

        def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("transient")
            return "done"

        manager = RetryManager(RetryConfig(max_attempts=3), sleep=_no_sleep)
        result = manager.execute_with_retry(
            flaky,
            is_retryable=lambda e: isinstance(e, ConnectionError),
            on_retry=lambda attempt, error: retries.append(attempt),
        )

        assert result == "done"
        assert len(calls) == 3
        assert retries == [1, 2]

    def test_exhaustion_raises_max_retries_exceeded(self) -> None:
        from tokensim.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

        def always_fails() -> None:
            raise ConnectionError("down")

        manager = RetryManager(RetryConfig(max_attempts=2), sleep=_no_sleep)
        with pytest.raises(MaxRetriesExceeded) as exc_info:
            manager.execute_with_retry(always_fails, is_retryable=lambda e: True)

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, ConnectionError)

    def test_non_retryable_error_propagates_immediately(self) -> None:
        from tokensim.engine.retry import RetryConfig, RetryManager

        calls: list[int] = []

        def bad_input() -> None:
            calls.append(1)
            raise ValueError("bad input")

        manager = RetryManager(RetryConfig(max_attempts=5), sleep=_no_sleep)
        with pytest.raises(ValueError, match="bad input"):
            manager.execute_with_retry(bad_input, is_retryable=lambda e: isinstance(e, ConnectionError))

        assert len(calls) == 1

    def test_on_retry_not_called_after_final_attempt(self) -> None:
        from tokensim.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

        retries: list[int] = []

        def always_fails() -> None:
            raise ConnectionError("down")

        manager = RetryManager(RetryConfig(max_attempts=3), sleep=_no_sleep)
        with pytest.raises(MaxRetriesExceeded):
            manager.execute_with_retry(
                always_fails,
                is_retryable=lambda e: True,
                on_retry=lambda attempt, error: retries.append(attempt),
            )

        assert retries == [1, 2]
