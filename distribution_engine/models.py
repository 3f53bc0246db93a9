"""Data model: distribution jobs, per-target attempts and delivery results.

Lifecycle of a job:
    SCHEDULED -> DISPATCHING -> COMPLETED
                             -> PARTIALLY_COMPLETED -> DISPATCHING (retry)
                             -> FAILED              -> DISPATCHING (retry)
    SCHEDULED, DISPATCHING   -> CANCELLED

Lifecycle of a target:
    PENDING -> IN_FLIGHT -> SUCCEEDED
                         -> FAILED -> PENDING (retry)
                         -> PENDING (scheduled retry or deferral)
    PENDING, IN_FLIGHT   -> ABANDONED
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from distribution_engine.clock import ensure_utc, utc_now
from distribution_engine.errors import ErrorClass, InvalidTransitionError, ValidationError


class JobState(Enum):
    SCHEDULED = "scheduled"
    DISPATCHING = "dispatching"
    PARTIALLY_COMPLETED = "partially_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """No automatic transition leaves a terminal job state."""
        return self in {
            JobState.COMPLETED,
            JobState.PARTIALLY_COMPLETED,
            JobState.CANCELLED,
            JobState.FAILED,
        }


class TargetState(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in {TargetState.SUCCEEDED, TargetState.FAILED, TargetState.ABANDONED}


_JOB_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.SCHEDULED: frozenset({JobState.DISPATCHING, JobState.CANCELLED}),
    JobState.DISPATCHING: frozenset({
        JobState.COMPLETED,
        JobState.PARTIALLY_COMPLETED,
        JobState.FAILED,
        JobState.CANCELLED,
    }),
    JobState.PARTIALLY_COMPLETED: frozenset({JobState.DISPATCHING}),
    JobState.FAILED: frozenset({JobState.DISPATCHING}),
    JobState.COMPLETED: frozenset(),
    JobState.CANCELLED: frozenset(),
}

_TARGET_TRANSITIONS: dict[TargetState, frozenset[TargetState]] = {
    TargetState.PENDING: frozenset({TargetState.IN_FLIGHT, TargetState.ABANDONED}),
    TargetState.IN_FLIGHT: frozenset({
        TargetState.PENDING,
        TargetState.SUCCEEDED,
        TargetState.FAILED,
        TargetState.ABANDONED,
    }),
    TargetState.FAILED: frozenset({TargetState.PENDING}),
    TargetState.SUCCEEDED: frozenset(),
    TargetState.ABANDONED: frozenset(),
}


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: str | None) -> datetime | None:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


def target_key(channel: str, account_ref: str) -> str:
    return f"{channel}:{account_ref}"


@dataclass(frozen=True)
class ContentSnapshot:
    """Immutable payload captured when the distribution is scheduled."""
    content_id: str
    title: str = ""
    body: str = ""
    canonical_url: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentSnapshot:
        return cls(**data)


@dataclass
class Target:
    """One (channel, account) destination requested by a caller."""
    channel: str
    account_ref: str
    customization: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return target_key(self.channel, self.account_ref)

    @classmethod
    def parse(cls, text: str) -> Target:
        """Parse "channel:account" (account defaults to "default")."""
        channel, _, account = text.strip().partition(":")
        if not channel:
            raise ValidationError(f"Invalid target {text!r}, expected channel[:account]")
        return cls(channel=channel, account_ref=account or "default")


@dataclass(frozen=True)
class AttemptError:
    error_class: ErrorClass
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"error_class": self.error_class.value, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttemptError:
        return cls(error_class=ErrorClass(data["error_class"]), message=data.get("message", ""))


@dataclass
class TargetAttempt:
    """Delivery state of one target inside a job."""
    channel: str
    account_ref: str
    customization: dict[str, Any] = field(default_factory=dict)
    state: TargetState = TargetState.PENDING
    attempt_count: int = 0
    round: int = 0
    next_attempt_at: datetime | None = None
    last_error: AttemptError | None = None
    external_id: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None

    @property
    def key(self) -> str:
        return target_key(self.channel, self.account_ref)

    def transition(self, new_state: TargetState) -> None:
        if new_state == self.state:
            return
        if new_state not in _TARGET_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Target {self.key} cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def due_at(self, scheduled_time: datetime) -> datetime:
        return self.next_attempt_at or scheduled_time

    def is_due(self, now: datetime, scheduled_time: datetime) -> bool:
        return self.state == TargetState.PENDING and self.due_at(scheduled_time) <= now

    def lease_expired(self, now: datetime) -> bool:
        return (
            self.state == TargetState.IN_FLIGHT
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )

    def clear_lease(self) -> None:
        self.lease_owner = None
        self.lease_expires_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "account_ref": self.account_ref,
            "customization": dict(self.customization),
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "round": self.round,
            "next_attempt_at": _dt_to_str(self.next_attempt_at),
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "external_id": self.external_id,
            "lease_owner": self.lease_owner,
            "lease_expires_at": _dt_to_str(self.lease_expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TargetAttempt:
        last_error = data.get("last_error")
        return cls(
            channel=data["channel"],
            account_ref=data["account_ref"],
            customization=data.get("customization") or {},
            state=TargetState(data.get("state", "pending")),
            attempt_count=data.get("attempt_count", 0),
            round=data.get("round", 0),
            next_attempt_at=_dt_from_str(data.get("next_attempt_at")),
            last_error=AttemptError.from_dict(last_error) if last_error else None,
            external_id=data.get("external_id"),
            lease_owner=data.get("lease_owner"),
            lease_expires_at=_dt_from_str(data.get("lease_expires_at")),
        )


def derive_job_state(current: JobState, targets: Iterable[TargetAttempt]) -> JobState:
    """Compute the job state implied by its targets.

    Cancelled and completed jobs never change. While any target is still
    pending or in flight the job is dispatching (or still scheduled if
    nothing has started).
    """
    if current in (JobState.CANCELLED, JobState.COMPLETED):
        return current
    states = [t.state for t in targets]
    if not all(s.is_terminal for s in states):
        if current in (JobState.SCHEDULED, JobState.DISPATCHING):
            return current
        return JobState.DISPATCHING
    if all(s == TargetState.SUCCEEDED for s in states):
        return JobState.COMPLETED
    if any(s == TargetState.SUCCEEDED for s in states):
        return JobState.PARTIALLY_COMPLETED
    return JobState.FAILED


@dataclass
class DistributionJob:
    id: str
    content_id: str
    snapshot: ContentSnapshot
    targets: list[TargetAttempt]
    scheduled_time: datetime
    state: JobState = JobState.SCHEDULED
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        content_id: str,
        targets: Iterable[Target],
        scheduled_time: datetime,
        snapshot: ContentSnapshot | None = None,
        now: datetime | None = None,
    ) -> DistributionJob:
        attempts: list[TargetAttempt] = []
        seen: set[str] = set()
        for target in targets:
            if target.key in seen:
                raise ValidationError(f"Duplicate target {target.key}")
            seen.add(target.key)
            attempts.append(TargetAttempt(
                channel=target.channel,
                account_ref=target.account_ref,
                customization=dict(target.customization),
            ))
        if not attempts:
            raise ValidationError("A distribution job needs at least one target")
        created = now or utc_now()
        return cls(
            id=uuid.uuid4().hex,
            content_id=content_id,
            snapshot=snapshot or ContentSnapshot(content_id=content_id),
            targets=attempts,
            scheduled_time=ensure_utc(scheduled_time),
            created_at=created,
            updated_at=created,
        )

    def target(self, key: str) -> TargetAttempt:
        for t in self.targets:
            if t.key == key:
                return t
        raise KeyError(key)

    def transition(self, new_state: JobState) -> None:
        if new_state == self.state:
            return
        if new_state not in _JOB_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Job {self.id} cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def reconcile(self) -> JobState:
        """Bring the job state in line with its targets and return it."""
        derived = derive_job_state(self.state, self.targets)
        if derived != self.state:
            if self.state == JobState.SCHEDULED and derived.is_terminal:
                self.transition(JobState.DISPATCHING)
            self.transition(derived)
        return self.state

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content_id": self.content_id,
            "snapshot": self.snapshot.to_dict(),
            "targets": [t.to_dict() for t in self.targets],
            "scheduled_time": _dt_to_str(self.scheduled_time),
            "state": self.state.value,
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DistributionJob:
        return cls(
            id=data["id"],
            content_id=data["content_id"],
            snapshot=ContentSnapshot.from_dict(data["snapshot"]),
            targets=[TargetAttempt.from_dict(t) for t in data["targets"]],
            scheduled_time=_dt_from_str(data["scheduled_time"]),  # type: ignore[arg-type]
            state=JobState(data["state"]),
            created_at=_dt_from_str(data["created_at"]),  # type: ignore[arg-type]
            updated_at=_dt_from_str(data["updated_at"]),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class DistributionResult:
    """Outcome of one delivery attempt. Append-only."""
    job_id: str
    channel: str
    account_ref: str
    round: int
    attempt_number: int
    success: bool
    timestamp: datetime
    external_id: str | None = None
    error_class: ErrorClass | None = None
    message: str = ""

    @property
    def target_key(self) -> str:
        return target_key(self.channel, self.account_ref)

    @property
    def key(self) -> tuple[str, str, int, int]:
        return (self.job_id, self.target_key, self.round, self.attempt_number)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "channel": self.channel,
            "account_ref": self.account_ref,
            "round": self.round,
            "attempt_number": self.attempt_number,
            "success": self.success,
            "timestamp": _dt_to_str(self.timestamp),
            "external_id": self.external_id,
            "error_class": self.error_class.value if self.error_class else None,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DistributionResult:
        error_class = data.get("error_class")
        return cls(
            job_id=data["job_id"],
            channel=data["channel"],
            account_ref=data["account_ref"],
            round=data.get("round", 0),
            attempt_number=data["attempt_number"],
            success=data["success"],
            timestamp=_dt_from_str(data["timestamp"]),  # type: ignore[arg-type]
            external_id=data.get("external_id"),
            error_class=ErrorClass(error_class) if error_class else None,
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class DispatchableTarget:
    """A leased target handed to a worker by poll_due."""
    job_id: str
    channel: str
    account_ref: str
    customization: dict[str, Any]
    snapshot: ContentSnapshot
    attempt_count: int
    round: int
    scheduled_time: datetime
    lease_owner: str
    lease_expires_at: datetime

    @property
    def key(self) -> str:
        return target_key(self.channel, self.account_ref)

    @property
    def idempotency_key(self) -> str:
        return f"{self.job_id}:{self.key}:{self.round}"


@dataclass(frozen=True)
class TargetUpdate:
    """New target state reported by a worker when it releases a lease."""
    state: TargetState
    attempt_count: int
    next_attempt_at: datetime | None = None
    last_error: AttemptError | None = None
    external_id: str | None = None
