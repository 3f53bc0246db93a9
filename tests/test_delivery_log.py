"""Tests for the delivery log module."""

from datetime import datetime, timezone

import pytest

from distribution_engine.delivery_log import DeliveryLog
from distribution_engine.errors import ErrorClass, JobStoreError
from distribution_engine.models import DistributionResult

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _result(job_id="j1", channel="mastodon", attempt=1, success=True, round=0, **kwargs):
    kwargs.setdefault("external_id", "toot-1" if success else None)
    kwargs.setdefault("error_class", None if success else ErrorClass.TRANSIENT)
    return DistributionResult(
        job_id=job_id, channel=channel, account_ref="main", round=round,
        attempt_number=attempt, success=success, timestamp=T0, **kwargs,
    )


class TestDeliveryLog:
    def test_append_and_count(self):
        log = DeliveryLog()
        assert log.append(_result()) is True
        assert log.total_records == 1

    def test_duplicate_attempt_ignored(self):
        log = DeliveryLog()
        log.append(_result())
        assert log.append(_result()) is False
        assert log.total_records == 1

    def test_new_round_is_not_a_duplicate(self):
        log = DeliveryLog()
        log.append(_result(success=False))
        assert log.append(_result(round=1)) is True

    def test_extend_counts_new_records(self):
        log = DeliveryLog()
        log.append(_result(attempt=1))
        assert log.extend([_result(attempt=1), _result(attempt=2)]) == 1

    def test_get_by_job(self):
        log = DeliveryLog()
        log.append(_result(job_id="j1"))
        log.append(_result(job_id="j2"))
        assert len(log.get_by_job("j1")) == 1

    def test_get_by_channel(self):
        log = DeliveryLog()
        log.append(_result(channel="mastodon", attempt=1))
        log.append(_result(channel="mastodon", attempt=2, success=False))
        log.append(_result(channel="discord"))
        assert len(log.get_by_channel("mastodon")) == 2

    def test_get_failures(self):
        log = DeliveryLog()
        log.append(_result())
        log.append(_result(job_id="j2", success=False, message="timeout"))
        failures = log.get_failures()
        assert len(failures) == 1
        assert failures[0].message == "timeout"

    def test_has_been_delivered(self):
        log = DeliveryLog()
        log.append(_result(channel="mastodon"))
        assert log.has_been_delivered("j1", "mastodon:main") is True
        assert log.has_been_delivered("j1", "discord:main") is False

    def test_persistence(self, tmp_path):
        path = tmp_path / "log.json"
        log1 = DeliveryLog(path)
        log1.append(_result(success=False, message="HTTP 503"))
        assert path.exists()

        log2 = DeliveryLog(path)
        assert log2.total_records == 1
        record = log2.get_by_job("j1")[0]
        assert record.error_class == ErrorClass.TRANSIENT
        assert record.timestamp == T0
        assert log2.append(_result(success=False)) is False

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "log.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(JobStoreError):
            DeliveryLog(path)

    def test_reload_sees_other_writers(self, tmp_path):
        path = tmp_path / "log.json"
        reader = DeliveryLog(path)
        DeliveryLog(path).append(_result())

        assert reader.total_records == 0
        reader.reload()
        assert reader.total_records == 1
        assert reader.contains(_result())
