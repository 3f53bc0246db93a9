"""Exception hierarchy for the distribution engine.

Hierarchy:
    DistributionError
    +-- ConfigurationError
    +-- ValidationError (ValueError)
    +-- JobNotFoundError
    +-- InvalidTransitionError
    +-- JobStoreError
    +-- LeaseExpiredError
    +-- ConnectorError
        +-- PermanentError
        +-- TransientError
        +-- RateLimitedError
        +-- ChannelUnavailableError

Connector failures are reduced to one of the ErrorClass values before they
reach the job store; provider-specific exception types never leave the
dispatcher.
"""

from __future__ import annotations

from enum import Enum


class ErrorClass(Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    CHANNEL_UNAVAILABLE = "channel_unavailable"


class DistributionError(Exception):
    """Base exception for all engine errors."""


class ConfigurationError(DistributionError):
    """Raised when engine configuration is invalid."""


class ValidationError(DistributionError, ValueError):
    """Raised when a caller passes an unacceptable request."""


class JobNotFoundError(DistributionError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"No distribution job with id {job_id!r}")


class InvalidTransitionError(DistributionError):
    """Raised when a state change would violate the job or target lifecycle."""


class JobStoreError(DistributionError):
    """Raised when the job store cannot complete an operation."""


class LeaseExpiredError(DistributionError):
    """Raised when a worker reports on a target it no longer holds a lease for."""

    def __init__(self, job_id: str, target_key: str) -> None:
        self.job_id = job_id
        self.target_key = target_key
        super().__init__(f"Lease on {job_id}/{target_key} is no longer held")


class ConnectorError(DistributionError):
    """A delivery failure, already classified."""

    error_class: ErrorClass = ErrorClass.TRANSIENT

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.message = message
        self.retry_after = retry_after
        super().__init__(message)


class PermanentError(ConnectorError):
    """Rejected for good: bad credentials, malformed payload, 4xx."""

    error_class = ErrorClass.PERMANENT


class TransientError(ConnectorError):
    """Timeouts, 5xx and network failures."""

    error_class = ErrorClass.TRANSIENT


class RateLimitedError(ConnectorError):
    error_class = ErrorClass.RATE_LIMITED


class ChannelUnavailableError(ConnectorError):
    """Raised when a channel's circuit is open and the call was not attempted."""

    error_class = ErrorClass.CHANNEL_UNAVAILABLE

    def __init__(self, channel: str, retry_after: float, message: str | None = None) -> None:
        self.channel = channel
        super().__init__(
            message or f"Channel {channel!r} is unavailable, circuit reopens in {retry_after:.1f}s",
            retry_after=retry_after,
        )
