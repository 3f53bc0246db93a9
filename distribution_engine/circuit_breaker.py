"""Per-channel circuit breakers.

Implements a three-state machine per channel:
  CLOSED    -> Normal operation, failures inside the rolling window are counted
  OPEN      -> Dispatches fail fast with ChannelUnavailableError
  HALF_OPEN -> A single probe dispatch is let through to test recovery

The registry holds one breaker per channel for the lifetime of the process.
Each breaker guards its own state with its own lock, so a busy channel
never serializes dispatch on another.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from distribution_engine.errors import ChannelUnavailableError, ConfigurationError

logger = logging.getLogger(__name__)


class CircuitStatus(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    window: float = 300.0
    cooldown: float = 120.0
    half_open_max_calls: int = 1
    probe_timeout: float = 150.0

    def validate(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.window <= 0 or self.cooldown <= 0 or self.probe_timeout <= 0:
            raise ConfigurationError("window, cooldown and probe_timeout must be positive")
        if self.half_open_max_calls < 1:
            raise ConfigurationError("half_open_max_calls must be at least 1")


@dataclass(frozen=True)
class CircuitSnapshot:
    channel: str
    status: CircuitStatus
    consecutive_failures: int
    opened_at: float | None


class CircuitBreaker:
    """Circuit breaker for one channel."""

    def __init__(
        self,
        channel: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.channel = channel
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._status = CircuitStatus.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._probes: deque[float] = deque()

    def _refresh(self, now: float) -> None:
        if self._status == CircuitStatus.OPEN and self._opened_at is not None:
            if now - self._opened_at >= self._config.cooldown:
                self._status = CircuitStatus.HALF_OPEN
                self._probes.clear()
                logger.info("Circuit for %s is half-open, allowing a probe", self.channel)
        while self._failures and now - self._failures[0] > self._config.window:
            self._failures.popleft()

    @property
    def status(self) -> CircuitStatus:
        with self._lock:
            self._refresh(self._clock())
            return self._status

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            self._refresh(self._clock())
            return len(self._failures)

    @property
    def opened_at(self) -> float | None:
        with self._lock:
            return self._opened_at

    def remaining_open(self) -> float:
        """Seconds until an OPEN circuit lets a probe through (0 otherwise)."""
        with self._lock:
            now = self._clock()
            self._refresh(now)
            return self._remaining(now)

    def _remaining(self, now: float) -> float:
        if self._status != CircuitStatus.OPEN or self._opened_at is None:
            return 0.0
        return max(self._opened_at + self._config.cooldown - now, 0.0)

    def acquire(self) -> bool:
        """Ask permission to dispatch.

        Returns:
            True when the call is the HALF_OPEN probe. Pass it back to
            record_success, which only closes the circuit for a probe.

        Raises:
            ChannelUnavailableError: If the circuit is OPEN, or HALF_OPEN with
                its probe already taken.
        """
        with self._lock:
            now = self._clock()
            self._refresh(now)

            if self._status == CircuitStatus.OPEN:
                raise ChannelUnavailableError(self.channel, self._remaining(now))

            if self._status == CircuitStatus.HALF_OPEN:
                while self._probes and now - self._probes[0] >= self._config.probe_timeout:
                    self._probes.popleft()
                if len(self._probes) >= self._config.half_open_max_calls:
                    raise ChannelUnavailableError(self.channel, 0.0)
                self._probes.append(now)
                return True
            return False

    def release(self, probe: bool) -> None:
        """Hand back a probe slot for a call that never reached the channel."""
        if not probe:
            return
        with self._lock:
            if self._status == CircuitStatus.HALF_OPEN and self._probes:
                self._probes.pop()

    def record_success(self, probe: bool = False) -> None:
        """Report a successful call.

        A CLOSED circuit forgets its failures. A HALF_OPEN circuit closes only
        on its probe's success. Late successes from calls admitted before the
        circuit opened change nothing.
        """
        with self._lock:
            self._refresh(self._clock())
            if self._status == CircuitStatus.CLOSED:
                self._failures.clear()
            elif self._status == CircuitStatus.HALF_OPEN and probe:
                logger.info("Circuit for %s closed after a successful probe", self.channel)
                self._close()
            else:
                logger.debug(
                    "Ignoring late success on %s circuit for %s", self._status.value, self.channel,
                )

    def _close(self) -> None:
        self._status = CircuitStatus.CLOSED
        self._failures.clear()
        self._probes.clear()
        self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            self._failures.append(now)

            if self._status == CircuitStatus.HALF_OPEN:
                self._open(now)
            elif (
                self._status == CircuitStatus.CLOSED
                and len(self._failures) >= self._config.failure_threshold
            ):
                self._open(now)

    def _open(self, now: float) -> None:
        self._status = CircuitStatus.OPEN
        self._opened_at = now
        self._probes.clear()
        logger.warning(
            "Circuit for %s opened after %d failures, cooling down for %.0fs",
            self.channel, len(self._failures), self._config.cooldown,
        )

    def reset(self) -> None:
        """Manually reset the circuit breaker to CLOSED."""
        with self._lock:
            self._close()

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._refresh(self._clock())
            return CircuitSnapshot(
                channel=self.channel,
                status=self._status,
                consecutive_failures=len(self._failures),
                opened_at=self._opened_at,
            )


class CircuitBreakerRegistry:
    """One circuit breaker per channel, shared by every dispatch worker."""

    def __init__(
        self,
        channels: Iterable[str] = (),
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._config.validate()
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {
            channel: CircuitBreaker(channel, self._config, clock) for channel in channels
        }

    def get(self, channel: str) -> CircuitBreaker:
        breaker = self._breakers.get(channel)
        if breaker is None:
            with self._lock:
                breaker = self._breakers.setdefault(
                    channel, CircuitBreaker(channel, self._config, self._clock),
                )
        return breaker

    def reset(self, channel: str) -> None:
        self.get(channel).reset()
        logger.info("Circuit for %s reset by operator", channel)

    def snapshot(self) -> list[CircuitSnapshot]:
        return [self._breakers[c].snapshot() for c in sorted(self._breakers)]

    @property
    def channels(self) -> list[str]:
        return sorted(self._breakers)
