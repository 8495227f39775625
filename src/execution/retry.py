"""Retry and backoff policy helpers for action execution."""

from __future__ import annotations

from dataclasses import dataclass

from config import settings

BACKOFF_STRATEGIES = ("none", "fixed", "exponential")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff configuration for one action type."""

    max_attempts: int
    backoff_strategy: str
    backoff_base_seconds: float
    max_backoff_seconds: float

    @staticmethod
    def for_action(action_type: str) -> "RetryPolicy":
        """Build a retry policy from executor settings for an action type."""
        executor_config = settings.executor
        return RetryPolicy(
            max_attempts=executor_config.attempts_for(action_type),
            backoff_strategy=executor_config.backoff_strategy,
            backoff_base_seconds=float(executor_config.backoff_base_seconds),
            max_backoff_seconds=float(executor_config.max_backoff_seconds),
        )


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    """Return whether another attempt is permitted."""
    return int(attempt_count) < int(max_attempts)


def compute_backoff_delay_seconds(
    backoff_strategy: str,
    retry_count: int,
    backoff_base_seconds: float,
    max_backoff_seconds: float | None = None,
) -> float:
    """Compute a retry delay in seconds for a given backoff strategy."""
    if retry_count <= 0:
        raise ValueError("retry_count must be >= 1.")
    if backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError("backoff_strategy must be valid.")
    if backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if backoff_strategy == "none":
        delay = 0.0
    elif backoff_strategy == "fixed":
        delay = float(backoff_base_seconds)
    else:
        delay = float(backoff_base_seconds) * (2 ** (retry_count - 1))
    if max_backoff_seconds is not None:
        delay = min(delay, float(max_backoff_seconds))
    return delay
