"""Exponential backoff as a bounded state machine.

Delay = min(initial_delay * (multiplier ** attempt), max_delay)

The policy and state carry no I/O, so the backoff math and the stop
conditions can be tested without sleeping or touching the network.

Example:
    >>> policy = RetryPolicy(max_retries=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0)
    >>> state = policy.start()
    >>> while state.record_failure(retryable=True):
    ...     print(state.attempt, state.delay)
    1 1.0
    2 2.0
    3 4.0
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_delay: Delay before the first retry, in seconds
        multiplier: Exponential growth factor
        max_delay: Cap on any single delay, in seconds
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""
        return min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)

    def start(self) -> "RetryState":
        return RetryState(policy=self)


@dataclass
class RetryState:
    """Progress through one retried operation."""

    policy: RetryPolicy
    attempt: int = 0
    delay: float = 0.0
    exhausted: bool = False
    last_error: Optional[Exception] = None
    delays: List[float] = field(default_factory=list)

    def record_failure(self, retryable: bool, error: Optional[Exception] = None) -> bool:
        """Register a failed attempt.

        Returns True when another attempt should be made; ``delay`` then holds
        the time to wait before it.
        """
        self.last_error = error
        if not retryable or self.attempt >= self.policy.max_retries:
            self.exhausted = True
            self.delay = 0.0
            return False
        self.delay = self.policy.delay_for(self.attempt)
        self.delays.append(self.delay)
        self.attempt += 1
        return True

    @property
    def attempts_made(self) -> int:
        return self.attempt + 1
