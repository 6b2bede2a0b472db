"""
Retry backoff: exponential delay capped at a maximum, with symmetric jitter.
"""
import random
from dataclasses import dataclass
from typing import Callable, Optional

from models import NotificationSettings

DEFAULT_BASE_DELAY_SECONDS = 30
DEFAULT_MAX_DELAY_SECONDS = 300
DEFAULT_JITTER_FRACTION = 0.3
DEFAULT_MAX_RETRIES = 2


def next_delay(
    attempt_index: int,
    base_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
    max_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    jitter_fraction: float = DEFAULT_JITTER_FRACTION,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Seconds to wait before retry number attempt_index (0-based).

    capped = min(base * 2**attempt_index, max); the result is capped +/- up to
    capped * jitter_fraction, never below zero. Pass `uniform` to make the
    jitter deterministic in tests.
    """
    capped = min(base_seconds * (2 ** max(attempt_index, 0)), max_seconds)
    jitter = capped * jitter_fraction
    return max(0.0, capped + uniform(-jitter, jitter))


@dataclass
class RetryConfig:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    jitter_fraction: float = DEFAULT_JITTER_FRACTION

    @classmethod
    def from_settings(
        cls,
        settings: Optional[NotificationSettings],
        jitter_fraction: float = DEFAULT_JITTER_FRACTION,
    ) -> "RetryConfig":
        """Delays come from the type's retry_delays_seconds (first = base, largest = cap)."""
        if settings is None:
            return cls(jitter_fraction=jitter_fraction)
        delays = [d for d in settings.retry_delays_seconds if d > 0]
        if not delays:
            return cls(max_retries=settings.max_retries, jitter_fraction=jitter_fraction)
        return cls(
            max_retries=settings.max_retries,
            base_delay_seconds=delays[0],
            max_delay_seconds=max(delays),
            jitter_fraction=jitter_fraction,
        )

    def delay_for(self, attempt_index: int, uniform: Callable[[float, float], float] = random.uniform) -> float:
        return next_delay(
            attempt_index,
            self.base_delay_seconds,
            self.max_delay_seconds,
            self.jitter_fraction,
            uniform=uniform,
        )
