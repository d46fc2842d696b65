"""
Bounded retry with exponential backoff and jitter for channel sends.

Each failed attempt is reported through `on_failure` before backing off, so
the caller can persist attempts and last_error as they happen.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from digestq.config import DELIVERY_BASE_DELAY, DELIVERY_JITTER, DELIVERY_MAX_ATTEMPTS, DELIVERY_MAX_DELAY
from digestq.infrastructure.errors import RetryExhaustedError, TransportError
from digestq.observability.telemetry import counter, log_event

T = TypeVar("T")


@dataclass
class RetryPolicy:
    stage: str
    max_attempts: int = DELIVERY_MAX_ATTEMPTS
    base_delay: float = DELIVERY_BASE_DELAY
    max_delay: float = DELIVERY_MAX_DELAY
    jitter: float = DELIVERY_JITTER
    sleep_fn: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def execute(
        self,
        func: Callable[[], T],
        on_failure: Callable[[int, Exception], None] | None = None,
        first_attempt: int = 1,
    ) -> T:
        """
        Call func until it succeeds or the budget is spent.

        Args:
            func: Zero-argument callable performing one attempt
            on_failure: Called with (attempt number, error) after every failed attempt
            first_attempt: Attempt number to start from (resuming a partly spent budget)

        Raises:
            TransportError: Non-retryable transport error (no further attempts)
            RetryExhaustedError: Budget spent; carries the last error
        """
        attempt = first_attempt - 1
        last_error: Exception | None = None

        while attempt < self.max_attempts:
            attempt += 1
            try:
                return func()
            except TransportError as exc:
                last_error = exc
                if on_failure is not None:
                    on_failure(attempt, exc)
                if not exc.retryable:
                    log_event(
                        "retry.non_retryable",
                        stage=self.stage,
                        error=str(exc),
                        status=exc.status_code,
                        attempt=attempt,
                    )
                    raise
            except Exception as exc:
                last_error = exc
                if on_failure is not None:
                    on_failure(attempt, exc)
                log_event("retry.attempt_failed", stage=self.stage, error=str(exc), attempt=attempt)

            if attempt >= self.max_attempts:
                break
            self._backoff(attempt)

        counter(f"{self.stage}.retry_exhausted")
        raise RetryExhaustedError(
            f"{self.stage}: {attempt} attempts failed: {last_error}",
            attempts=attempt,
            last_error=last_error,
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + self.rng.uniform(0, self.jitter)

    def _backoff(self, attempt: int) -> None:
        counter(f"{self.stage}.retry")
        delay = self.delay_for(attempt)
        log_event("retry.scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
        self.sleep_fn(delay)
