"""Retry backoff policies for transcoding jobs."""

import math
import random
from abc import ABC, abstractmethod
from typing import Optional

from mediaforge.core.config import Settings


class RetryPolicy(ABC):
    """Decides how long a failed job waits before it is re-queued."""

    @abstractmethod
    def delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-indexed)."""


class ConstantBackoff(RetryPolicy):
    """Same delay for every retry."""

    def __init__(self, delay: float = 30.0):
        self._delay = max(delay, 0.0)

    def delay(self, attempt: int) -> float:
        return self._delay


class LinearBackoff(RetryPolicy):
    """Delay grows by a fixed step per attempt, capped at ``max_delay``."""

    def __init__(self, initial_delay: float = 30.0, step: float = 30.0, max_delay: float = 600.0):
        self.initial_delay = initial_delay
        self.step = step
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            return self.initial_delay
        return min(self.initial_delay + self.step * (attempt - 1), self.max_delay)


class ExponentialBackoff(RetryPolicy):
    """Exponential backoff with optional proportional jitter."""

    def __init__(
        self,
        initial_delay: float = 30.0,
        multiplier: float = 2.0,
        max_delay: float = 600.0,
        jitter: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()

    def base_delay(self, attempt: int) -> float:
        """Delay before jitter is applied, capped at ``max_delay``."""
        if attempt < 1:
            return self.initial_delay
        delay = self.initial_delay * math.pow(self.multiplier, attempt - 1)
        return min(delay, self.max_delay)

    def delay(self, attempt: int) -> float:
        delay = self.base_delay(attempt)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += self._rng.uniform(-spread, spread)
        return min(max(delay, 0.0), self.max_delay)


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    """Build the policy named by ``RETRY_BACKOFF``.

    Raises:
        ValueError: If the name is unknown
    """
    name = settings.RETRY_BACKOFF.lower()
    if name == "constant":
        return ConstantBackoff(settings.RETRY_DELAY_SECONDS)
    if name == "linear":
        return LinearBackoff(
            initial_delay=settings.RETRY_DELAY_SECONDS,
            step=settings.RETRY_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )
    if name == "exponential":
        return ExponentialBackoff(
            initial_delay=settings.RETRY_DELAY_SECONDS,
            multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )
    raise ValueError(f"Unsupported retry backoff: {settings.RETRY_BACKOFF}")
