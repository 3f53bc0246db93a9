"""Caller-facing API for scheduling and managing distributions.

A caller hands over a content snapshot, a set of (channel, account) targets
and a publication time; the engine takes it from there. Delivery happens in
the dispatcher, driven either by run_pending or by a WorkerPool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from distribution_engine.clock import Clock, ensure_utc
from distribution_engine.dispatcher import Dispatcher
from distribution_engine.errors import InvalidTransitionError, ValidationError
from distribution_engine.models import (
    ContentSnapshot,
    DistributionJob,
    DistributionResult,
    JobState,
    Target,
)
from distribution_engine.store import JobStore

logger = logging.getLogger(__name__)


@dataclass
class JobStatus:
    """A job together with every result recorded for it."""
    job: DistributionJob
    results: list[DistributionResult] = field(default_factory=list)

    @property
    def state(self) -> JobState:
        return self.job.state

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }


class Distributor:
    """Schedules content for distribution across channels."""

    def __init__(self, store: JobStore, dispatcher: Dispatcher, clock: Clock | None = None) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or dispatcher.clock

    def schedule_distribution(
        self,
        content_id: str,
        targets: Iterable[Target],
        scheduled_time: datetime | None = None,
        snapshot: ContentSnapshot | None = None,
    ) -> str:
        """Create a distribution job and return its id.

        Args:
            content_id: Identifier of the content item.
            targets: Channel/account destinations; keys must be unique.
            scheduled_time: Earliest publication time. Defaults to now;
                naive values are taken as UTC.
            snapshot: Payload to deliver. Defaults to an empty snapshot
                carrying only the content id.

        Raises:
            ValidationError: On an empty or duplicate target set, an unknown
                channel, or a snapshot for a different content item.
        """
        if not content_id:
            raise ValidationError("content_id is required")
        targets = list(targets)
        unknown = sorted({t.channel for t in targets if t.channel not in self.dispatcher.connectors})
        if unknown:
            raise ValidationError(f"No connector registered for channel(s): {', '.join(unknown)}")
        if snapshot is not None and snapshot.content_id != content_id:
            raise ValidationError(
                f"Snapshot is for content {snapshot.content_id!r}, not {content_id!r}"
            )

        now = self.clock.now()
        when = ensure_utc(scheduled_time) if scheduled_time else now
        job = DistributionJob.create(content_id, targets, when, snapshot, now=now)
        self.store.create_job(job)
        logger.info(
            "Scheduled job %s for content %s to %d target(s) at %s",
            job.id, content_id, len(job.targets), when.isoformat(),
        )
        return job.id

    def get_status(self, job_id: str) -> JobStatus:
        return JobStatus(job=self.store.get_job(job_id), results=self.store.results(job_id))

    def list_jobs(self, state: JobState | None = None) -> list[DistributionJob]:
        return self.store.list_jobs(state)

    def cancel(self, job_id: str) -> JobStatus:
        self.dispatcher.cancel(job_id)
        return self.get_status(job_id)

    def retry_failed(self, job_id: str) -> JobStatus:
        self.dispatcher.retry(job_id)
        return self.get_status(job_id)

    def reschedule(self, job_id: str, scheduled_time: datetime) -> JobStatus:
        """Move a job that has not started dispatching to a new time."""
        when = ensure_utc(scheduled_time)

        def _reschedule(job: DistributionJob) -> None:
            if job.state != JobState.SCHEDULED:
                raise InvalidTransitionError(
                    f"Job {job.id} is {job.state.value}; only scheduled jobs can be rescheduled"
                )
            job.scheduled_time = when

        self.store.update_job(job_id, _reschedule, now=self.clock.now())
        logger.info("Rescheduled job %s to %s", job_id, when.isoformat())
        return self.get_status(job_id)

    def run_pending(self, limit: int | None = None) -> list[DistributionResult]:
        """Dispatch every target that is due now, in this thread."""
        return self.dispatcher.run_once(limit=limit)
