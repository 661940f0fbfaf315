"""Bounded exponential backoff for failed reconciliation cycles."""

from dataclasses import dataclass
import logging
import random

_LOGGER = logging.getLogger(__name__)

# Exponent cap so the delay computation never overflows
MAX_EXPONENT = 10


@dataclass
class Backoff:
    """Retry schedule state for one Application.

    The delay after the n-th consecutive failure is
    `min(base * 2^(n-1), max) * (1 +/- jitter)`.
    """

    base_delay: float = 5.0
    max_delay: float = 300.0
    jitter_factor: float = 0.1
    failures: int = 0

    def delay(self) -> float:
        """Return the delay before the next retry, for the current failure count."""
        if self.failures <= 0:
            return 0.0
        exponent = min(self.failures - 1, MAX_EXPONENT)
        delay = min(self.base_delay * 2**exponent, self.max_delay)
        return float(delay * (1 + (random.random() * 2 - 1) * self.jitter_factor))

    def failure(self) -> float:
        """Record a failed cycle and return the delay before the retry."""
        self.failures += 1
        delay = self.delay()
        _LOGGER.debug("Failure %d, retrying in %0.1fs", self.failures, delay)
        return delay

    def reset(self) -> None:
        """Record a successful cycle."""
        self.failures = 0
