"""Exponential backoff with jitter, and the recovery policy built on it."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PollingGaveUpError(RuntimeError):
    """Raised when a polling loop exhausts its retry ceilings."""


@dataclass
class BackoffConfig:
    """Delay parameters, in seconds."""
    initial_delay: float = 2.0
    max_delay: float = 30.0
    factor: float = 1.8
    jitter_ratio: float = 0.25

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "BackoffConfig":
        polling = (config or {}).get("polling", {})
        return cls(
            initial_delay=polling.get("initial_delay_seconds", 2.0),
            max_delay=polling.get("max_delay_seconds", 30.0),
            factor=polling.get("factor", 1.8),
            jitter_ratio=polling.get("jitter", 0.25),
        )


def backoff_delay(attempt: int, config: BackoffConfig, rng: Optional[random.Random] = None) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    base = min(initial * factor**attempt, max), then a uniform jitter of
    +/- jitter_ratio * base is added. Never negative.

    Args:
        attempt: Number of failures already retried
        config: Delay parameters
        rng: Random source (pass a seeded ``random.Random`` for deterministic tests)
    """
    rng = rng or random
    try:
        base = min(config.initial_delay * (config.factor ** attempt), config.max_delay)
    except OverflowError:
        base = config.max_delay
    jitter = (rng.random() * 2 - 1) * config.jitter_ratio * base
    return max(0.0, base + jitter)


class PollingRecovery:
    """
    Retry policy for a polling loop hitting transient upstream errors.

    Gives up (raises PollingGaveUpError) once more than
    ``max_consecutive_failures`` failures happen in a row, or once the current
    failure streak has lasted longer than ``max_total_seconds``. Any success
    resets both.
    """

    def __init__(
        self,
        config: Optional[BackoffConfig] = None,
        max_consecutive_failures: int = 10,
        max_total_seconds: float = 300.0,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or BackoffConfig()
        self.max_consecutive_failures = max_consecutive_failures
        self.max_total_seconds = max_total_seconds
        self._rng = rng
        self._clock = clock

        self.consecutive_failures = 0
        self._streak_started: Optional[float] = None

    @classmethod
    def from_config(cls, config: Optional[dict] = None, **kwargs) -> "PollingRecovery":
        polling = (config or {}).get("polling", {})
        return cls(
            config=BackoffConfig.from_config(config),
            max_consecutive_failures=polling.get("max_consecutive_failures", 10),
            max_total_seconds=polling.get("max_total_seconds", 300.0),
            **kwargs,
        )

    @property
    def failing(self) -> bool:
        return self.consecutive_failures > 0

    def record_success(self):
        """Reset the failure streak."""
        if self.consecutive_failures:
            logger.info(f"Polling recovered after {self.consecutive_failures} consecutive failure(s)")
        self.consecutive_failures = 0
        self._streak_started = None

    def record_failure(self, error: Optional[BaseException] = None) -> float:
        """
        Count one failure and return how long to wait before retrying.

        Raises:
            PollingGaveUpError: if either ceiling has been exceeded
        """
        now = self._clock()
        if self._streak_started is None:
            self._streak_started = now
        self.consecutive_failures += 1

        if self.consecutive_failures > self.max_consecutive_failures:
            raise PollingGaveUpError(
                f"Giving up after {self.consecutive_failures} consecutive failures (last: {error})"
            )
        elapsed = now - self._streak_started
        if elapsed > self.max_total_seconds:
            raise PollingGaveUpError(
                f"Giving up after {elapsed:.0f}s of failed polling (last: {error})"
            )

        delay = backoff_delay(self.consecutive_failures - 1, self.config, self._rng)
        logger.warning(
            f"Polling failure #{self.consecutive_failures}: {error} - retrying in {delay:.1f}s"
        )
        return delay
