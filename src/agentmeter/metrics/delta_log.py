"""Per-session JSONL log of MetricDelta records.

``{metrics_dir}/{session_id}.jsonl`` holds every delta emitted for a
session together with its delivery status. Appends are deduplicated by
record id; status updates rewrite the file atomically. Both run under the
log's flock so a status rewrite never drops a concurrent append.
"""

import logging
from pathlib import Path

from agentmeter.lib.atomic import append_jsonl, file_lock, read_jsonl, write_jsonl_atomic
from agentmeter.models import MetricDelta, SyncStatus

logger = logging.getLogger(__name__)


class DeltaLog:
    def __init__(self, metrics_dir: Path, session_id: str):
        self.session_id = session_id
        self.path = Path(metrics_dir) / f"{session_id}.jsonl"
        self.lock_path = Path(metrics_dir) / f".{session_id}.jsonl.lock"

    def read_all(self) -> list[MetricDelta]:
        deltas = []
        for record in read_jsonl(self.path):
            try:
                deltas.append(MetricDelta.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable delta in {self.path.name}: {e}")
        return deltas

    def record_ids(self) -> set[str]:
        return {d.record_id for d in self.read_all()}

    def append(self, deltas: list[MetricDelta]) -> list[MetricDelta]:
        """Append deltas whose record id is not already logged.

        Returns:
            The deltas actually written.
        """
        if not deltas:
            return []
        with file_lock(self.lock_path):
            existing = self.record_ids()
            fresh = []
            for delta in deltas:
                if delta.record_id in existing:
                    continue
                existing.add(delta.record_id)
                fresh.append(delta)
            append_jsonl(self.path, (d.to_dict() for d in fresh))
        if fresh:
            logger.debug(f"Appended {len(fresh)} deltas to {self.path.name}")
        return fresh

    def pending(self, max_attempts: int) -> list[MetricDelta]:
        """Deltas still eligible for delivery.

        Includes retryable failures (attempts below max_attempts).
        """
        return [
            d for d in self.read_all()
            if d.sync_status == SyncStatus.PENDING
            or (d.sync_status == SyncStatus.FAILED and d.sync_attempts < max_attempts)
        ]

    def update(self, updated: list[MetricDelta]) -> None:
        """Replace stored deltas by record id and rewrite the log atomically.

        The log is re-read under the lock, so records appended since the
        caller's read are kept.
        """
        if not updated:
            return
        by_id = {d.record_id: d for d in updated}
        with file_lock(self.lock_path):
            merged = [by_id.get(d.record_id, d) for d in self.read_all()]
            write_jsonl_atomic(self.path, (d.to_dict() for d in merged))

    def counts(self) -> dict[str, int]:
        """Number of deltas per sync status."""
        counts = {status.value: 0 for status in SyncStatus}
        for delta in self.read_all():
            counts[delta.sync_status.value] += 1
        return counts
