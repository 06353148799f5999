"""Retry policy for actions declared with ``onError: retry``.

A definition's ``retryCount`` counts re-tries, so an action with
``retryCount: 2`` runs at most three times. Backoff is exponential with
jitter (tenacity). When every attempt fails the manager raises
MaxRetriesExceeded and the action executor records the failure and carries
on as if the action had ``onError: continue``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

if TYPE_CHECKING:
    from tokensim.core.config import RetrySettings

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Every permitted attempt of an operation failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters, in seconds, and the total attempt count (first try included)."""

    max_attempts: int = 1
    base_delay: float = 0.1
    max_delay: float = 5.0
    jitter: float = 0.1
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> RetryConfig:
        return cls(max_attempts=1)

    @classmethod
    def for_action(cls, retry_count: int, settings: RetrySettings | None = None) -> RetryConfig:
        """Config for an action allowing ``retry_count`` re-tries; negatives clamp to zero."""
        attempts = max(0, int(retry_count)) + 1
        if settings is None:
            return cls(max_attempts=attempts)
        return cls(
            max_attempts=attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter_seconds,
            exponential_base=settings.exponential_base,
        )


class RetryManager:
    """Runs a callable under a RetryConfig.

    ``sleep`` is the backoff sleep; tests pass a no-op.
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Call ``operation`` until it succeeds or attempts run out.

        ``on_retry(attempt, error)`` fires before each backoff sleep, so
        never after the final attempt. An error ``is_retryable`` rejects
        propagates unchanged on the attempt that raised it.

        Raises:
            MaxRetriesExceeded: every attempt raised a retryable error
        """

        def before_sleep(state: RetryCallState) -> None:
            if on_retry is not None and state.outcome is not None:
                error = state.outcome.exception()
                if error is not None:
                    on_retry(state.attempt_number, error)

        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential_jitter(
                initial=self._config.base_delay,
                max=self._config.max_delay,
                exp_base=self._config.exponential_base,
                jitter=self._config.jitter,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            sleep=self._sleep,
        )
        try:
            return retrying(operation)
        except RetryError as e:
            last = e.last_attempt
            error = last.exception()
            if error is None:
                raise
            raise MaxRetriesExceeded(last.attempt_number, error) from e
