"""
Reconnection backoff policy.

Exponential backoff with additive jitter: the n-th attempt waits
``min(base_delay * 2**(n-1) + U[0, jitter), max_delay)`` seconds. The jitter
keeps many clients that lost the same server from retrying in lockstep.
"""

import random
from typing import Optional


def should_retry(attempt_count: int, max_attempts: Optional[int]) -> bool:
    """True iff another attempt is allowed (``None`` means unbounded)."""
    if max_attempts is None:
        return True
    return attempt_count < max_attempts


def backoff_delay(attempt_count: int, base_delay: float, max_delay: float) -> float:
    """Non-jittered component of the delay before attempt ``attempt_count``."""
    if attempt_count < 1:
        raise ValueError(f"attempt_count must be >= 1, got {attempt_count}")
    # Cap the exponent so huge attempt counts cannot overflow a float
    exponent = min(attempt_count - 1, 64)
    return min(base_delay * (2 ** exponent), max_delay)


def next_delay(attempt_count: int,
               base_delay: float,
               max_delay: float,
               jitter: float = 1.0,
               rng: Optional[random.Random] = None) -> float:
    """
    Delay in seconds before reconnect attempt ``attempt_count``.

    Args:
        attempt_count: 1-based attempt number
        base_delay: Delay of the first attempt
        max_delay: Upper bound of the returned delay
        jitter: Jitter is drawn from ``[0, jitter)`` on every call
        rng: Random source (module ``random`` when omitted)

    Returns:
        Delay in seconds, never above ``max_delay``
    """
    if attempt_count < 1:
        raise ValueError(f"attempt_count must be >= 1, got {attempt_count}")
    exponent = min(attempt_count - 1, 64)
    offset = (rng or random).random() * jitter if jitter > 0 else 0.0
    return min(base_delay * (2 ** exponent) + offset, max_delay)


class ReconnectPolicy:
    """Attempt counter plus the backoff computation for one connection."""

    def __init__(self,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 max_attempts: Optional[int] = None,
                 jitter: float = 1.0,
                 rng: Optional[random.Random] = None):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self._rng = rng
        self._attempt_count = 0

    @property
    def attempt_count(self) -> int:
        return self._attempt_count

    def should_retry(self) -> bool:
        return should_retry(self._attempt_count, self.max_attempts)

    def record_attempt(self) -> int:
        """Count a reconnect scheduling decision and return the attempt number."""
        self._attempt_count += 1
        return self._attempt_count

    def next_delay(self) -> float:
        """Delay for the current attempt (call after :meth:`record_attempt`)."""
        return next_delay(
            max(self._attempt_count, 1),
            self.base_delay,
            self.max_delay,
            self.jitter,
            self._rng,
        )

    def reset(self) -> None:
        self._attempt_count = 0
