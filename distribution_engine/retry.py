"""Retry policy: exponential backoff with jitter, decided per failed attempt.

The policy never sleeps. It tells the dispatcher whether a failed target
should be retried and after how long, or whether it has reached a terminal
state. Scheduling the retry is the job store's business.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Union

from distribution_engine.errors import ConfigurationError, ErrorClass
from distribution_engine.models import TargetState


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 30.0
    max_delay: float = 3600.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.1
    min_deferral: float = 60.0
    abandon_after: float | None = None  # seconds past scheduled_time

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ConfigurationError("Require 0 <= base_delay <= max_delay")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier must be >= 1")
        if not 0 <= self.jitter_fraction < 1:
            raise ConfigurationError("jitter_fraction must be in [0, 1)")
        if self.min_deferral <= 0:
            raise ConfigurationError("min_deferral must be positive")
        if self.abandon_after is not None and self.abandon_after <= 0:
            raise ConfigurationError("abandon_after must be positive when set")


@dataclass(frozen=True)
class Retry:
    delay: float


@dataclass(frozen=True)
class Terminal:
    outcome: TargetState  # FAILED or ABANDONED


Decision = Union[Retry, Terminal]


class RetryPolicy:
    """Decides what happens to a target after a failed or deferred attempt."""

    def __init__(self, config: RetryConfig | None = None, rng: random.Random | None = None) -> None:
        self.config = config or RetryConfig()
        self.config.validate()
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def backoff(self, attempt_count: int) -> float:
        """Delay before the next attempt, after attempt_count attempts."""
        cfg = self.config
        exponent = max(attempt_count - 1, 0)
        delay = min(cfg.base_delay * (cfg.multiplier ** exponent), cfg.max_delay)
        if cfg.jitter_fraction:
            spread = delay * cfg.jitter_fraction
            delay += self._rng.uniform(-spread, spread)
        return min(max(delay, 0.0), cfg.max_delay)

    def decide(
        self,
        attempt_count: int,
        error_class: ErrorClass,
        retry_after: float | None = None,
        unavailable_for: float | None = None,
        age: float | None = None,
    ) -> Decision:
        """Decide the fate of a target.

        Args:
            attempt_count: Connector invocations so far, including the one
                that just failed. Deferrals do not count.
            error_class: Classified failure.
            retry_after: Server-directed delay for RATE_LIMITED.
            unavailable_for: Remaining open time of the channel's circuit.
            age: Seconds since the job's scheduled time.

        Returns:
            Retry(delay) or Terminal(FAILED | ABANDONED).
        """
        cfg = self.config

        if error_class == ErrorClass.PERMANENT:
            return Terminal(TargetState.FAILED)

        if cfg.abandon_after is not None and age is not None and age >= cfg.abandon_after:
            return Terminal(TargetState.ABANDONED)

        if error_class == ErrorClass.CHANNEL_UNAVAILABLE:
            return Retry(max(unavailable_for or 0.0, cfg.min_deferral))

        if attempt_count >= cfg.max_attempts:
            return Terminal(TargetState.FAILED)

        if error_class == ErrorClass.RATE_LIMITED and retry_after is not None:
            return Retry(max(retry_after, 0.0))

        return Retry(self.backoff(attempt_count))
