"""Append-only delivery log of distribution results.

Records every delivery attempt to a JSON file. Appends are idempotent on
(job, target, round, attempt number), so a worker that reports twice never
produces two records for the same attempt. Records are never removed here;
retention is handled outside the engine.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

from distribution_engine.errors import JobStoreError
from distribution_engine.models import DistributionResult

logger = logging.getLogger(__name__)


class DeliveryLog:
    """JSON file-backed delivery log. In-memory when no path is given."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._records: list[DistributionResult] = []
        self._keys: set[tuple[str, str, int, int]] = set()
        if path and path.exists():
            self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            records = [DistributionResult.from_dict(rec) for rec in data.get("records", [])]
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
            raise JobStoreError(f"Delivery log {self._path} is unreadable: {exc}") from exc
        self._records = records
        self._keys = {r.key for r in records}

    def reload(self) -> None:
        """Re-read the file, picking up records written by another process."""
        with self._lock:
            self._load()

    def _save(self) -> None:
        if not self._path:
            return
        data = {"records": [r.to_dict() for r in self._records]}
        tmp = self._path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(str(tmp), str(self._path))
        except OSError as exc:
            raise JobStoreError(f"Cannot write delivery log {self._path}: {exc}") from exc

    def contains(self, result: DistributionResult) -> bool:
        with self._lock:
            return result.key in self._keys

    def append(self, result: DistributionResult) -> bool:
        """Record a result. Returns False if this attempt was already recorded."""
        return self.extend([result]) == 1

    def extend(self, results: list[DistributionResult]) -> int:
        """Record several results in one write. Returns how many were new."""
        with self._lock:
            added = 0
            for result in results:
                if result.key in self._keys:
                    logger.debug("Ignoring duplicate result for %s", result.key)
                    continue
                self._records.append(result)
                self._keys.add(result.key)
                added += 1
            if added:
                self._save()
            return added

    def get_by_job(self, job_id: str) -> list[DistributionResult]:
        with self._lock:
            return [r for r in self._records if r.job_id == job_id]

    def get_by_channel(self, channel: str) -> list[DistributionResult]:
        with self._lock:
            return [r for r in self._records if r.channel == channel]

    def get_failures(self) -> list[DistributionResult]:
        with self._lock:
            return [r for r in self._records if not r.success]

    def has_been_delivered(self, job_id: str, target_key: str) -> bool:
        with self._lock:
            return any(
                r.job_id == job_id and r.target_key == target_key and r.success
                for r in self._records
            )

    @property
    def total_records(self) -> int:
        return len(self._records)

    @property
    def all_records(self) -> list[DistributionResult]:
        with self._lock:
            return list(self._records)
