"""Exponential backoff shared by every call to an external AI provider."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import TypeVar

import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_chain, wait_fixed, wait_none

from feedlens.errors import is_retryable_error
from feedlens.models.pipeline import RetryResult

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0)


class BackoffPolicy:
    """Retry retryable errors with a fixed delay table, then give up.

    The first call is followed by one retry per entry in ``delays``, so the
    default table (1s, 2s, 4s) allows four calls and at most 7s of waiting.
    ``sleep`` is injectable so tests never actually wait.
    """

    def __init__(
        self,
        delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        sleep: Callable[[float], None] = time.sleep,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    ) -> None:
        self.delays = tuple(delays)
        self.sleep = sleep
        self.is_retryable = is_retryable

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    def _retryer(self) -> Retrying:
        wait = wait_chain(*[wait_fixed(delay) for delay in self.delays]) if self.delays else wait_none()
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            retry=retry_if_exception(self.is_retryable),
            sleep=self.sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    def call(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` under the policy; the final error propagates unchanged."""

        for attempt in self._retryer():
            with attempt:
                return fn()
        raise RuntimeError("Retryer exhausted without raising")

    def execute(self, fn: Callable[[], T]) -> RetryResult[T]:
        """Run ``fn`` under the policy and report attempts and time spent waiting."""

        state: RetryCallState | None = None
        try:
            for attempt in self._retryer():
                state = attempt.retry_state
                with attempt:
                    result = fn()
                    return RetryResult(
                        success=True,
                        result=result,
                        attempts=state.attempt_number,
                        total_delay_seconds=state.idle_for,
                    )
        except Exception as exc:  # noqa: BLE001
            attempts = state.attempt_number if state else 0
            if self.is_retryable(exc):
                log.error("retries_exhausted", attempts=attempts, error=str(exc))
            else:
                log.warning("error_not_retryable", attempts=attempts, error=str(exc))
            return RetryResult(
                success=False,
                error=exc,
                attempts=attempts,
                total_delay_seconds=state.idle_for if state else 0.0,
            )
        raise RuntimeError("Retryer exhausted without raising")
