import random
from typing import Callable, Optional


class ReconnectBackoff:
    """Exponential reconnect delay with symmetric jitter.

    delay = min(initial * factor ** attempt, max_delay), then jittered by
    +/- jitter_ratio and floored at `initial`. The attempt counter wraps to
    zero at `max_attempts` and is reset when the connection opens.
    """

    def __init__(
        self,
        initial_delay: float = 2.0,
        factor: float = 1.5,
        max_delay: float = 60.0,
        max_attempts: int = 10,
        jitter_ratio: float = 0.15,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.initial_delay = initial_delay
        self.factor = factor
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.random

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.factor**attempt), self.max_delay)

    def delay(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        jitter = base * self.jitter_ratio * (self._rng() * 2 - 1)
        return max(self.initial_delay, base + jitter)

    def next_attempt(self, attempt: int) -> int:
        attempt += 1
        if attempt >= self.max_attempts:
            return 0
        return attempt

    @classmethod
    def from_settings(cls, settings) -> "ReconnectBackoff":
        return cls(
            initial_delay=settings.reconnect_initial_delay_seconds,
            factor=settings.reconnect_backoff_factor,
            max_delay=settings.reconnect_max_delay_seconds,
            max_attempts=settings.reconnect_max_attempts,
            jitter_ratio=settings.reconnect_jitter_ratio,
        )
