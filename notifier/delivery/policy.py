"""Retry policy for failed channel sends.

Delays grow exponentially with the number of attempts already made:
with the defaults the first three retries wait 5, 10 and 20 minutes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from notifier.utils.config import RetryConfig


@dataclass(frozen=True)
class RetryDecision:
    """Result of evaluating the retry policy for one failure."""

    can_retry: bool
    delay: timedelta
    next_retry_at: datetime | None


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""

    max_retries: int = 3
    base_delay_minutes: float = 5
    backoff_factor: float = 2

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay_minutes=config.base_delay_minutes,
            backoff_factor=config.backoff_factor,
        )

    def delay_for(self, retry_count: int) -> timedelta:
        """Backoff delay after ``retry_count`` attempts have already been made."""
        return timedelta(minutes=self.base_delay_minutes * self.backoff_factor**retry_count)

    def evaluate(self, retry_count: int, now: datetime) -> RetryDecision:
        """Decide whether another attempt is allowed and when.

        Args:
            retry_count: Attempts already made (0-indexed)
            now: Current time

        Returns:
            RetryDecision with the next eligible time, or no time when the budget is spent
        """
        if retry_count >= self.max_retries:
            return RetryDecision(can_retry=False, delay=timedelta(0), next_retry_at=None)
        delay = self.delay_for(retry_count)
        return RetryDecision(can_retry=True, delay=delay, next_retry_at=now + delay)
