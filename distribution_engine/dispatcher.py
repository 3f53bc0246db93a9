"""Dispatcher: drives every target from PENDING to a terminal state.

Each pass leases due targets one at a time from the job store. For every
leased target the dispatcher asks the channel's circuit breaker for
permission, invokes the connector under a bounded timeout, and reports the
outcome back to the store together with the retry policy's decision.

Ordering inside a target is guaranteed by the lease: attempt N+1 cannot be
leased before attempt N's outcome is written or its lease expires. Targets
of the same job are independent and may finish in any order.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Iterator

from distribution_engine.circuit_breaker import CircuitBreakerRegistry
from distribution_engine.clock import Clock, SystemClock
from distribution_engine.connectors import ChannelConnector, ConnectorRegistry, PublishReceipt
from distribution_engine.errors import (
    ChannelUnavailableError,
    ConnectorError,
    ErrorClass,
    InvalidTransitionError,
    JobStoreError,
    LeaseExpiredError,
    PermanentError,
    TransientError,
)
from distribution_engine.models import (
    AttemptError,
    DispatchableTarget,
    DistributionJob,
    DistributionResult,
    JobState,
    TargetState,
    TargetUpdate,
)
from distribution_engine.retry import Retry, RetryPolicy
from distribution_engine.store import JobStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"


class _PublishNotStarted(Exception):
    """Every publish thread stayed busy for the whole timeout."""


class Dispatcher:
    """Scheduling core shared by all dispatch workers of a process."""

    def __init__(
        self,
        store: JobStore,
        connectors: ConnectorRegistry,
        breakers: CircuitBreakerRegistry | None = None,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        publish_timeout: float = 30.0,
        lease_grace: float = 120.0,
        worker_token: str | None = None,
        max_concurrent_publishes: int = 8,
    ) -> None:
        self.store = store
        self.connectors = connectors
        self.clock = clock or SystemClock()
        self.breakers = breakers or CircuitBreakerRegistry(
            connectors.channels, clock=self.clock.monotonic,
        )
        self.policy = policy or RetryPolicy()
        self.publish_timeout = publish_timeout
        self.lease_grace = lease_grace
        self.worker_token = worker_token or f"worker-{uuid.uuid4().hex[:12]}"
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_publishes, thread_name_prefix="publish",
        )

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.publish_timeout + self.lease_grace)

    # -- selection ---------------------------------------------------------

    def poll_due(
        self, now: datetime | None = None, worker_token: str | None = None,
    ) -> Iterator[DispatchableTarget]:
        """Lazily lease due targets.

        Each item is leased only when the consumer asks for it, so dropping
        the iterator part-way leaves no stray leases behind and polling again
        is always safe.
        """
        token = worker_token or self.worker_token
        while True:
            lease = self.store.lease_next_due(token, now or self.clock.now(), self.lease_duration)
            if lease is None:
                return
            yield lease

    # -- delivery ----------------------------------------------------------

    def dispatch(self, target: DispatchableTarget) -> DistributionResult:
        """Attempt delivery of one leased target and record the outcome."""
        now = self.clock.now()
        connector = self.connectors.get(target.channel)
        if connector is None:
            error = PermanentError(f"No connector registered for channel {target.channel!r}")
            return self._fail(target, error, now, target.attempt_count)

        breaker = self.breakers.get(target.channel)
        try:
            probe = breaker.acquire()
        except ChannelUnavailableError as exc:
            return self._defer(target, exc, now)

        attempt_number = target.attempt_count + 1
        try:
            receipt = self._publish(connector, target)
        except _PublishNotStarted:
            breaker.release(probe)
            busy = ChannelUnavailableError(
                target.channel, 0.0,
                f"All publish slots busy, {target.channel} was not called",
            )
            return self._defer(target, busy, self.clock.now())
        except Exception as exc:
            error = exc if isinstance(exc, ConnectorError) else connector.normalize_error(exc)
            breaker.record_failure()
            return self._fail(target, error, self.clock.now(), attempt_number)

        breaker.record_success(probe)
        return self._succeed(target, receipt, self.clock.now(), attempt_number)

    def _publish(self, connector: ChannelConnector, target: DispatchableTarget) -> PublishReceipt:
        future = self._executor.submit(
            connector.publish,
            target.snapshot,
            target.account_ref,
            dict(target.customization),
            timeout=self.publish_timeout,
            idempotency_key=target.idempotency_key,
        )
        try:
            return future.result(timeout=self.publish_timeout)
        except FutureTimeoutError:
            if future.cancel():
                raise _PublishNotStarted from None
            raise TransientError(
                f"Publish to {target.channel} timed out after {self.publish_timeout:.0f}s"
            ) from None

    def _result(
        self,
        target: DispatchableTarget,
        attempt_number: int,
        now: datetime,
        success: bool,
        external_id: str | None = None,
        error: ConnectorError | None = None,
    ) -> DistributionResult:
        return DistributionResult(
            job_id=target.job_id,
            channel=target.channel,
            account_ref=target.account_ref,
            round=target.round,
            attempt_number=attempt_number,
            success=success,
            timestamp=now,
            external_id=external_id,
            error_class=error.error_class if error else None,
            message=error.message if error else "",
        )

    def _succeed(
        self,
        target: DispatchableTarget,
        receipt: PublishReceipt,
        now: datetime,
        attempt_number: int,
    ) -> DistributionResult:
        result = self._result(target, attempt_number, now, True, external_id=receipt.external_id)
        update = TargetUpdate(
            state=TargetState.SUCCEEDED,
            attempt_count=attempt_number,
            external_id=receipt.external_id,
        )
        if self._write(target, update, result):
            logger.info(
                "Delivered %s/%s on attempt %d as %s",
                target.job_id, target.key, attempt_number, receipt.external_id,
            )
        return result

    def _fail(
        self,
        target: DispatchableTarget,
        error: ConnectorError,
        now: datetime,
        attempt_count: int,
    ) -> DistributionResult:
        # attempt_count equals target.attempt_count when the connector was
        # never invoked; the record then closes out the next attempt number.
        attempt_number = max(attempt_count, target.attempt_count + 1)
        decision = self.policy.decide(
            attempt_count,
            error.error_class,
            retry_after=error.retry_after,
            age=(now - target.scheduled_time).total_seconds(),
        )
        last_error = AttemptError(error.error_class, error.message)
        result = self._result(target, attempt_number, now, False, error=error)

        if isinstance(decision, Retry):
            update = TargetUpdate(
                state=TargetState.PENDING,
                attempt_count=attempt_count,
                next_attempt_at=now + timedelta(seconds=decision.delay),
                last_error=last_error,
            )
            if self._write(target, update, result):
                logger.warning(
                    "Attempt %d for %s/%s failed (%s), retrying in %.0fs: %s",
                    attempt_number, target.job_id, target.key,
                    error.error_class.value, decision.delay, error.message,
                )
        else:
            update = TargetUpdate(
                state=decision.outcome,
                attempt_count=attempt_count,
                last_error=last_error,
            )
            if self._write(target, update, result):
                logger.warning(
                    "Target %s/%s %s after %d attempt(s) (%s): %s",
                    target.job_id, target.key, decision.outcome.value,
                    attempt_count, error.error_class.value, error.message,
                )
        return result

    def _defer(
        self, target: DispatchableTarget, exc: ChannelUnavailableError, now: datetime,
    ) -> DistributionResult:
        """Push a target back without spending an attempt."""
        decision = self.policy.decide(
            target.attempt_count,
            ErrorClass.CHANNEL_UNAVAILABLE,
            unavailable_for=exc.retry_after,
            age=(now - target.scheduled_time).total_seconds(),
        )
        last_error = AttemptError(ErrorClass.CHANNEL_UNAVAILABLE, exc.message)

        if isinstance(decision, Retry):
            update = TargetUpdate(
                state=TargetState.PENDING,
                attempt_count=target.attempt_count,
                next_attempt_at=now + timedelta(seconds=decision.delay),
                last_error=last_error,
            )
            if self._write(target, update, None):
                logger.warning(
                    "Deferred %s/%s by %.0fs: %s",
                    target.job_id, target.key, decision.delay, exc.message,
                )
            return self._result(target, target.attempt_count, now, False, error=exc)

        result = self._result(target, target.attempt_count + 1, now, False, error=exc)
        update = TargetUpdate(
            state=decision.outcome,
            attempt_count=target.attempt_count,
            last_error=last_error,
        )
        if self._write(target, update, result):
            logger.warning("Abandoned %s/%s while its channel was unavailable", target.job_id, target.key)
        return result

    def _write(
        self,
        target: DispatchableTarget,
        update: TargetUpdate,
        result: DistributionResult | None,
    ) -> bool:
        try:
            written = self.store.write_result(target, update, result, now=self.clock.now())
        except LeaseExpiredError:
            logger.warning(
                "Lease on %s/%s was lost before its outcome was recorded; it will be re-selected",
                target.job_id, target.key,
            )
            return False
        if not written:
            logger.info("Outcome for %s/%s discarded", target.job_id, target.key)
        return written

    # -- job lifecycle -----------------------------------------------------

    def reconcile(self, job_id: str) -> DistributionJob:
        """Recompute a job's state from its targets."""

        def _reconcile(job: DistributionJob) -> None:
            job.reconcile()

        return self.store.update_job(job_id, _reconcile, now=self.clock.now())

    def cancel(self, job_id: str) -> DistributionJob:
        """Abandon every unfinished target of a job and mark it CANCELLED.

        Targets that are in flight are abandoned too; their outcome is
        discarded when it arrives.
        """
        now = self.clock.now()

        def _cancel(job: DistributionJob) -> list[DistributionResult]:
            if job.state.is_terminal:
                raise InvalidTransitionError(f"Job {job.id} is already {job.state.value}")
            results = []
            for t in job.targets:
                if t.state.is_terminal:
                    continue
                t.transition(TargetState.ABANDONED)
                t.clear_lease()
                t.next_attempt_at = None
                t.last_error = AttemptError(ErrorClass.PERMANENT, CANCELLED_MESSAGE)
                results.append(DistributionResult(
                    job_id=job.id,
                    channel=t.channel,
                    account_ref=t.account_ref,
                    round=t.round,
                    attempt_number=t.attempt_count + 1,
                    success=False,
                    timestamp=now,
                    error_class=ErrorClass.PERMANENT,
                    message=CANCELLED_MESSAGE,
                ))
            job.transition(JobState.CANCELLED)
            return results

        job = self.store.update_job(job_id, _cancel, now=now)
        logger.info("Cancelled job %s", job_id)
        return job

    def retry(self, job_id: str) -> DistributionJob:
        """Give FAILED targets of a finished job a fresh attempt budget."""

        def _retry(job: DistributionJob) -> None:
            if job.state not in (JobState.PARTIALLY_COMPLETED, JobState.FAILED):
                raise InvalidTransitionError(
                    f"Only partially completed or failed jobs can be retried, {job.id} is {job.state.value}"
                )
            failed = [t for t in job.targets if t.state == TargetState.FAILED]
            if not failed:
                raise InvalidTransitionError(f"Job {job.id} has no failed targets to retry")
            for t in failed:
                t.transition(TargetState.PENDING)
                t.attempt_count = 0
                t.round += 1
                t.next_attempt_at = None
                t.last_error = None
            job.transition(JobState.DISPATCHING)

        job = self.store.update_job(job_id, _retry, now=self.clock.now())
        logger.info("Retrying failed targets of job %s", job_id)
        return job

    # -- loop helpers ------------------------------------------------------

    def run_once(
        self, limit: int | None = None, worker_token: str | None = None,
    ) -> list[DistributionResult]:
        """Dispatch everything currently due (at most limit targets)."""
        results: list[DistributionResult] = []
        dispatched = 0
        for target in self.poll_due(worker_token=worker_token):
            dispatched += 1
            try:
                results.append(self.dispatch(target))
            except JobStoreError:
                logger.exception(
                    "Job store failed while recording %s/%s; its lease will expire",
                    target.job_id, target.key,
                )
            if limit is not None and dispatched >= limit:
                break
        return results

    def release_expired_leases(self, now: datetime | None = None) -> int:
        released = self.store.release_expired_leases(now or self.clock.now())
        if released:
            logger.info("Released %d expired lease(s)", released)
        return released

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
