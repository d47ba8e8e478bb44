from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from django.conf import settings

from finance.fiscal.models import FiscalJob

DEFAULT_BACKOFF_SECONDS = (60, 300, 900, 3600, 7200)
DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class RetryDecision:
    status: str
    attempts: int
    next_run_at: datetime | None

    @property
    def exhausted(self) -> bool:
        return self.status == FiscalJob.Status.FAILED


class BackoffPolicy:
    """Fixed backoff ladder indexed by the 1-based attempt count.

    Attempts beyond the ladder length reuse the last delay.
    """

    def __init__(
        self,
        delays: Sequence[float | timedelta] = DEFAULT_BACKOFF_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if not delays:
            raise ValueError("Backoff ladder must have at least one delay.")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        self.delays = tuple(
            delay if isinstance(delay, timedelta) else timedelta(seconds=delay)
            for delay in delays
        )
        self.max_attempts = max_attempts

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            delays=getattr(settings, "FISCAL_RETRY_BACKOFF_SECONDS", DEFAULT_BACKOFF_SECONDS),
            max_attempts=int(getattr(settings, "FISCAL_RETRY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)),
        )

    def delay_for(self, attempt: int) -> timedelta:
        if attempt < 1:
            raise ValueError("attempt is 1-based.")
        return self.delays[min(attempt, len(self.delays)) - 1]

    def decide(self, attempts: int, retryable: bool, now: datetime) -> RetryDecision:
        """Next job state after a failed attempt.

        `attempts` is the count before the failure. Non-retryable failures end
        the job without consuming the ladder.
        """

        if not retryable:
            return RetryDecision(status=FiscalJob.Status.FAILED, attempts=attempts, next_run_at=None)

        attempts += 1
        if attempts >= self.max_attempts:
            return RetryDecision(status=FiscalJob.Status.FAILED, attempts=attempts, next_run_at=None)

        return RetryDecision(
            status=FiscalJob.Status.QUEUED,
            attempts=attempts,
            next_run_at=now + self.delay_for(attempts),
        )


def is_retryable(exc: BaseException) -> bool:
    """Errors declare `retryable`; anything unclassified is assumed transient."""

    return bool(getattr(exc, "retryable", True))
