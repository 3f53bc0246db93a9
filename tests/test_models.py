"""Tests for the data model and lifecycle rules."""

from datetime import datetime, timedelta, timezone

import pytest

from distribution_engine.errors import ErrorClass, InvalidTransitionError, ValidationError
from distribution_engine.models import (
    AttemptError,
    ContentSnapshot,
    DistributionJob,
    DistributionResult,
    JobState,
    Target,
    TargetAttempt,
    TargetState,
    derive_job_state,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _attempts(*states):
    return [TargetAttempt(channel=f"c{i}", account_ref="a", state=s) for i, s in enumerate(states)]


class TestTarget:
    def test_parse_with_account(self):
        t = Target.parse("mastodon:main")
        assert (t.channel, t.account_ref) == ("mastodon", "main")
        assert t.key == "mastodon:main"

    def test_parse_defaults_account(self):
        assert Target.parse(" discord ").account_ref == "default"

    def test_parse_rejects_empty_channel(self):
        with pytest.raises(ValidationError):
            Target.parse(":main")


class TestTargetAttempt:
    def test_lifecycle(self):
        t = TargetAttempt(channel="a", account_ref="x")
        t.transition(TargetState.IN_FLIGHT)
        t.transition(TargetState.PENDING)
        t.transition(TargetState.IN_FLIGHT)
        t.transition(TargetState.SUCCEEDED)
        assert t.state == TargetState.SUCCEEDED

    def test_succeeded_is_final(self):
        t = TargetAttempt(channel="a", account_ref="x", state=TargetState.SUCCEEDED)
        with pytest.raises(InvalidTransitionError):
            t.transition(TargetState.PENDING)

    def test_pending_cannot_jump_to_succeeded(self):
        t = TargetAttempt(channel="a", account_ref="x")
        with pytest.raises(InvalidTransitionError):
            t.transition(TargetState.SUCCEEDED)

    def test_due_uses_next_attempt_when_set(self):
        t = TargetAttempt(channel="a", account_ref="x", next_attempt_at=T0 + timedelta(seconds=30))
        assert not t.is_due(T0, T0)
        assert t.is_due(T0 + timedelta(seconds=30), T0)

    def test_due_falls_back_to_scheduled_time(self):
        t = TargetAttempt(channel="a", account_ref="x")
        assert t.is_due(T0, T0)
        assert not t.is_due(T0, T0 + timedelta(minutes=1))

    def test_lease_expired(self):
        t = TargetAttempt(
            channel="a", account_ref="x", state=TargetState.IN_FLIGHT,
            lease_owner="w1", lease_expires_at=T0,
        )
        assert t.lease_expired(T0)
        assert not t.lease_expired(T0 - timedelta(seconds=1))


class TestDeriveJobState:
    def test_all_succeeded_is_completed(self):
        states = _attempts(TargetState.SUCCEEDED, TargetState.SUCCEEDED)
        assert derive_job_state(JobState.DISPATCHING, states) == JobState.COMPLETED

    def test_mixed_is_partially_completed(self):
        states = _attempts(TargetState.SUCCEEDED, TargetState.ABANDONED)
        assert derive_job_state(JobState.DISPATCHING, states) == JobState.PARTIALLY_COMPLETED

    def test_all_failed_is_failed(self):
        states = _attempts(TargetState.FAILED, TargetState.ABANDONED)
        assert derive_job_state(JobState.DISPATCHING, states) == JobState.FAILED

    def test_unfinished_stays_dispatching(self):
        states = _attempts(TargetState.SUCCEEDED, TargetState.PENDING)
        assert derive_job_state(JobState.DISPATCHING, states) == JobState.DISPATCHING
        assert derive_job_state(JobState.SCHEDULED, states) == JobState.SCHEDULED

    def test_cancelled_never_changes(self):
        states = _attempts(TargetState.SUCCEEDED)
        assert derive_job_state(JobState.CANCELLED, states) == JobState.CANCELLED


class TestDistributionJob:
    def test_create(self):
        job = DistributionJob.create("c1", [Target("a", "x"), Target("b", "y")], T0, now=T0)
        assert job.state == JobState.SCHEDULED
        assert [t.key for t in job.targets] == ["a:x", "b:y"]
        assert job.snapshot.content_id == "c1"
        assert len(job.id) == 32

    def test_create_treats_naive_time_as_utc(self):
        job = DistributionJob.create("c1", [Target("a", "x")], datetime(2025, 6, 1, 12, 0))
        assert job.scheduled_time == datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_rejects_duplicate_targets(self):
        with pytest.raises(ValidationError, match="Duplicate"):
            DistributionJob.create("c1", [Target("a", "x"), Target("a", "x")], T0)

    def test_rejects_empty_targets(self):
        with pytest.raises(ValidationError):
            DistributionJob.create("c1", [], T0)

    def test_completed_is_final(self):
        job = DistributionJob.create("c1", [Target("a", "x")], T0)
        job.transition(JobState.DISPATCHING)
        job.transition(JobState.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            job.transition(JobState.DISPATCHING)

    def test_scheduled_cannot_complete_directly(self):
        job = DistributionJob.create("c1", [Target("a", "x")], T0)
        with pytest.raises(InvalidTransitionError):
            job.transition(JobState.COMPLETED)

    def test_reconcile_passes_through_dispatching(self):
        job = DistributionJob.create("c1", [Target("a", "x")], T0)
        job.targets[0].state = TargetState.ABANDONED
        assert job.reconcile() == JobState.FAILED

    def test_target_lookup(self):
        job = DistributionJob.create("c1", [Target("a", "x")], T0)
        assert job.target("a:x").channel == "a"
        with pytest.raises(KeyError):
            job.target("b:x")

    def test_serialization(self):
        job = DistributionJob.create(
            "c1", [Target("a", "x", {"tag": "t"})], T0,
            snapshot=ContentSnapshot("c1", title="Title", metadata={"lang": "en"}), now=T0,
        )
        job.targets[0].last_error = AttemptError(ErrorClass.TRANSIENT, "HTTP 503")
        job.targets[0].next_attempt_at = T0 + timedelta(seconds=30)

        restored = DistributionJob.from_dict(job.to_dict())
        assert restored == job


class TestDistributionResult:
    def test_key_includes_round_and_attempt(self):
        r = DistributionResult("j1", "a", "x", 1, 2, False, T0, error_class=ErrorClass.TRANSIENT)
        assert r.key == ("j1", "a:x", 1, 2)
        assert DistributionResult.from_dict(r.to_dict()) == r
