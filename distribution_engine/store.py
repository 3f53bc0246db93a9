"""Job store: durable record of distribution jobs and their attempts.

The dispatcher talks to persistence only through the JobStore protocol.
Selection of due work and the write of an attempt's outcome are each a
single atomic step, so two workers can never hold a live lease on the same
target and a job's state is never observed out of step with its targets.

LocalJobStore keeps jobs in memory behind one lock and, when given a path,
mirrors them to a JSON file. Results go to a DeliveryLog. A file-backed
store re-reads the file at the start of every operation, and every write
holds an exclusive lock on a sidecar ``.lock`` file, so several processes
(a worker pool plus CLI invocations) can share one store path on POSIX
systems.
"""

from __future__ import annotations

import copy
import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Protocol

from distribution_engine.clock import utc_now
from distribution_engine.delivery_log import DeliveryLog
from distribution_engine.errors import JobNotFoundError, JobStoreError, LeaseExpiredError
from distribution_engine.models import (
    DispatchableTarget,
    DistributionJob,
    DistributionResult,
    JobState,
    TargetState,
    TargetUpdate,
)

logger = logging.getLogger(__name__)

JobMutation = Callable[[DistributionJob], Optional[Iterable[DistributionResult]]]


class JobStore(Protocol):
    def create_job(self, job: DistributionJob) -> None: ...

    def get_job(self, job_id: str) -> DistributionJob: ...

    def list_jobs(self, state: JobState | None = None) -> list[DistributionJob]: ...

    def lease_next_due(
        self, worker_token: str, now: datetime, lease_duration: timedelta,
    ) -> DispatchableTarget | None:
        """Atomically claim the most overdue eligible target, or return None."""
        ...

    def write_result(
        self,
        lease: DispatchableTarget,
        update: TargetUpdate,
        result: DistributionResult | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Apply an attempt's outcome and release the lease.

        Returns False when the outcome was discarded: the job was cancelled,
        or the lease is gone and this attempt is already recorded. Raises
        LeaseExpiredError when the lease is no longer held by the reporting
        worker. An outcome that was logged by an earlier failed write is
        applied by whoever holds the lease now.
        """
        ...

    def update_job(
        self, job_id: str, mutate: JobMutation, now: datetime | None = None,
    ) -> DistributionJob:
        """Atomically apply mutate to a job; results it returns are recorded."""
        ...

    def results(self, job_id: str) -> list[DistributionResult]: ...

    def release_expired_leases(self, now: datetime) -> int: ...


class LocalJobStore:
    """Thread-safe job store, optionally persisted to a JSON file."""

    def __init__(self, path: Path | None = None, delivery_log: DeliveryLog | None = None) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._locked_depth = 0
        self._jobs: dict[str, DistributionJob] = {}
        self._log = delivery_log if delivery_log is not None else DeliveryLog()
        if path and path.exists():
            self._load()

    @property
    def delivery_log(self) -> DeliveryLog:
        return self._log

    def _load(self) -> None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))  # type: ignore[union-attr]
            jobs = [DistributionJob.from_dict(j) for j in data.get("jobs", [])]
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
            raise JobStoreError(f"Job store {self._path} is unreadable: {exc}") from exc
        self._jobs = {job.id: job for job in jobs}

    def _sync(self) -> None:
        """Pick up writes made by other processes sharing the file."""
        if self._path and self._path.exists():
            self._load()
            self._log.reload()

    @contextmanager
    def _reading(self) -> Iterator[None]:
        # Writers replace the file atomically, so readers need no file lock.
        with self._lock:
            self._sync()
            yield

    @contextmanager
    def _writing(self) -> Iterator[None]:
        with self._lock:
            if not self._path or self._locked_depth:
                self._locked_depth += 1
                try:
                    self._sync()
                    yield
                finally:
                    self._locked_depth -= 1
                return

            lock_path = self._path.with_name(self._path.name + ".lock")
            try:
                handle = open(lock_path, "a")
            except OSError as exc:
                raise JobStoreError(f"Cannot lock job store {self._path}: {exc}") from exc
            with handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                self._locked_depth += 1
                try:
                    self._sync()
                    yield
                finally:
                    self._locked_depth -= 1
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _save(self) -> None:
        if not self._path:
            return
        data = {"jobs": [job.to_dict() for job in self._jobs.values()]}
        tmp = self._path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(str(tmp), str(self._path))
        except OSError as exc:
            raise JobStoreError(f"Cannot write job store {self._path}: {exc}") from exc

    def _commit(self, job: DistributionJob, results: Iterable[DistributionResult] = ()) -> None:
        # Results are logged before the job is saved. If the save fails the
        # row stays and the next holder of the lease applies its outcome.
        previous = self._jobs.get(job.id)
        self._jobs[job.id] = job
        try:
            pending = list(results)
            if pending:
                self._log.extend(pending)
            self._save()
        except JobStoreError:
            if previous is None:
                del self._jobs[job.id]
            else:
                self._jobs[job.id] = previous
            raise

    def _require(self, job_id: str) -> DistributionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def create_job(self, job: DistributionJob) -> None:
        with self._writing():
            if job.id in self._jobs:
                raise JobStoreError(f"Job {job.id} already exists")
            self._commit(copy.deepcopy(job))

    def get_job(self, job_id: str) -> DistributionJob:
        with self._reading():
            return copy.deepcopy(self._require(job_id))

    def list_jobs(self, state: JobState | None = None) -> list[DistributionJob]:
        with self._reading():
            jobs = [j for j in self._jobs.values() if state is None or j.state == state]
            return [copy.deepcopy(j) for j in sorted(jobs, key=lambda j: j.created_at)]

    def lease_next_due(
        self, worker_token: str, now: datetime, lease_duration: timedelta,
    ) -> DispatchableTarget | None:
        with self._writing():
            best: tuple[datetime, str, str] | None = None
            for job in self._jobs.values():
                if job.state not in (JobState.SCHEDULED, JobState.DISPATCHING):
                    continue
                for t in job.targets:
                    if t.is_due(now, job.scheduled_time):
                        due = t.due_at(job.scheduled_time)
                    elif t.lease_expired(now):
                        due = t.lease_expires_at  # type: ignore[assignment]
                    else:
                        continue
                    if best is None or due < best[0]:
                        best = (due, job.id, t.key)

            if best is None:
                return None

            _, job_id, key = best
            job = copy.deepcopy(self._jobs[job_id])
            target = job.target(key)
            if target.state == TargetState.IN_FLIGHT:
                logger.warning(
                    "Lease on %s/%s held by %s expired, re-leasing to %s",
                    job_id, key, target.lease_owner, worker_token,
                )
            target.transition(TargetState.IN_FLIGHT)
            target.lease_owner = worker_token
            target.lease_expires_at = now + lease_duration
            if job.state == JobState.SCHEDULED:
                job.transition(JobState.DISPATCHING)
            job.updated_at = now
            self._commit(job)

            return DispatchableTarget(
                job_id=job.id,
                channel=target.channel,
                account_ref=target.account_ref,
                customization=dict(target.customization),
                snapshot=job.snapshot,
                attempt_count=target.attempt_count,
                round=target.round,
                scheduled_time=job.scheduled_time,
                lease_owner=worker_token,
                lease_expires_at=target.lease_expires_at,
            )

    def write_result(
        self,
        lease: DispatchableTarget,
        update: TargetUpdate,
        result: DistributionResult | None = None,
        now: datetime | None = None,
    ) -> bool:
        with self._writing():
            current = self._require(lease.job_id)
            if current.state == JobState.CANCELLED:
                logger.warning(
                    "Discarding outcome for %s/%s: job was cancelled", lease.job_id, lease.key,
                )
                return False

            job = copy.deepcopy(current)
            target = job.target(lease.key)
            recorded = result is not None and self._log.contains(result)
            if (
                target.state != TargetState.IN_FLIGHT
                or target.lease_owner != lease.lease_owner
                or target.lease_expires_at != lease.lease_expires_at
                or target.round != lease.round
            ):
                if recorded:
                    logger.info("Outcome for %s already recorded", result.key)  # type: ignore[union-attr]
                    return False
                raise LeaseExpiredError(job.id, target.key)
            if recorded:
                logger.warning(
                    "Outcome for %s was logged but never applied, applying it now",
                    result.key,  # type: ignore[union-attr]
                )

            target.transition(update.state)
            target.attempt_count = update.attempt_count
            target.next_attempt_at = update.next_attempt_at
            target.last_error = update.last_error
            if update.external_id:
                target.external_id = update.external_id
            target.clear_lease()
            job.reconcile()
            job.updated_at = now or utc_now()
            self._commit(job, [result] if result is not None else [])
            return True

    def update_job(
        self, job_id: str, mutate: JobMutation, now: datetime | None = None,
    ) -> DistributionJob:
        with self._writing():
            job = copy.deepcopy(self._require(job_id))
            results = list(mutate(job) or [])
            job.updated_at = now or utc_now()
            self._commit(job, results)
            return copy.deepcopy(job)

    def results(self, job_id: str) -> list[DistributionResult]:
        with self._reading():
            return self._log.get_by_job(job_id)

    def release_expired_leases(self, now: datetime) -> int:
        with self._writing():
            released = 0
            for job_id in list(self._jobs):
                current = self._jobs[job_id]
                if not any(t.lease_expired(now) for t in current.targets):
                    continue
                job = copy.deepcopy(current)
                for target in job.targets:
                    if target.lease_expired(now):
                        logger.warning(
                            "Releasing expired lease on %s/%s held by %s",
                            job_id, target.key, target.lease_owner,
                        )
                        target.transition(TargetState.PENDING)
                        target.clear_lease()
                        released += 1
                job.updated_at = now
                self._commit(job)
            return released
