"""
RetryPolicy - decides whether a failed attempt is retried, and when.

Only transient failures (timeouts, connection failures) of idempotent
methods are retried. Bad responses and cancellations never are.
"""

import random
from dataclasses import dataclass, field

from antidote.services.errors import ErrorKind

TRANSIENT_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.CONNECTION_FAILURE})


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration and decision logic for retries."""

    max_attempts: int = 3  # Total attempts, including the first
    base_delay: float = 1.0  # Seconds before the first retry
    max_delay: float = 30.0
    jitter: float = 0.5  # Upper bound of random seconds added to each delay
    retry_methods: frozenset[str] = field(default_factory=lambda: frozenset({"GET"}))

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def is_retryable_method(self, method: str) -> bool:
        return method.upper() in self.retry_methods

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    def decide(self, method: str, kind: ErrorKind, attempt: int) -> RetryDecision:
        """
        Decide whether to retry after attempt number ``attempt`` failed.

        Args:
            method: HTTP method of the request
            kind: Classification of the failure
            attempt: Attempts made so far (1 after the first failure)
        """
        if not self.is_retryable_method(method):
            return RetryDecision(retry=False)
        if kind not in TRANSIENT_KINDS:
            return RetryDecision(retry=False)
        if attempt >= self.max_attempts:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay=self.backoff(attempt))


NO_RETRY = RetryPolicy(max_attempts=1)
