"""Sync state embedded in the session metadata file.

Tracks which record ids have been emitted (the dedup guard), which user
prompts have been attached, how far the session file has been processed,
and delivery statistics. Every mutation is a read-modify-write of the
session document, under the document's flock, followed by an atomic rename.
"""

import logging
import time
from typing import Callable

from agentmeter.metrics.delta_log import DeltaLog
from agentmeter.metrics.session_store import SessionStore
from agentmeter.models import MetricDelta, MetricsSession, SessionStatus, SyncState

logger = logging.getLogger(__name__)


def _extend_unique(target: list[str], items: list[str]) -> None:
    seen = set(target)
    for item in items:
        if item not in seen:
            seen.add(item)
            target.append(item)


class SyncStateManager:
    """SyncState operations for one session."""

    def __init__(self, session_id: str, store: SessionStore):
        self.session_id = session_id
        self.store = store

    def _mutate(self, apply: Callable[[SyncState], None]) -> SyncState | None:
        result: list[SyncState] = []

        def _on_session(session: MetricsSession) -> None:
            if session.sync is None:
                session.sync = SyncState(
                    session_id=session.session_id,
                    agent_session_id=session.correlation.agent_session_id or "",
                    session_start_time=session.start_time,
                )
            apply(session.sync)
            result.append(session.sync)

        if self.store.update(self.session_id, _on_session) is None:
            logger.debug(f"No session file for {self.session_id[:8]}, sync state not updated")
            return None
        return result[0]

    def initialize(self, agent_session_id: str, session_start_time: float | None = None) -> SyncState | None:
        """Create sync state if absent; an existing state is returned unchanged."""
        existing = self.load()
        if existing is not None:
            logger.debug(f"Sync state for {self.session_id[:8]} already exists")
            return existing

        def _init(state: SyncState) -> None:
            state.agent_session_id = agent_session_id
            if session_start_time is not None:
                state.session_start_time = session_start_time
            state.last_processed_timestamp = time.time()

        state = self._mutate(_init)
        if state is not None:
            logger.info(f"Initialized sync state for {self.session_id[:8]}")
        return state

    def load(self) -> SyncState | None:
        session = self.store.load(self.session_id)
        if session is None:
            return None
        return session.sync

    def save(self, state: SyncState) -> None:
        def _replace(session: MetricsSession) -> None:
            session.sync = state

        self.store.update(self.session_id, _replace)

    def processed_ids(self) -> set[str]:
        state = self.load()
        return set(state.processed_record_ids) if state else set()

    def attached_prompts(self) -> set[str]:
        state = self.load()
        return set(state.attached_user_prompt_texts) if state else set()

    def claim(self, record_ids: list[str]) -> list[str]:
        """Check-then-add record ids as one persisted step.

        Returns:
            The ids that were not yet present (in input order, duplicates
            within the batch collapsed). Ids already present are dropped.
        """
        claimed: list[str] = []

        def _claim(state: SyncState) -> None:
            seen = set(state.processed_record_ids)
            for record_id in record_ids:
                if record_id in seen:
                    continue
                seen.add(record_id)
                claimed.append(record_id)
            state.processed_record_ids.extend(claimed)
            state.total_deltas += len(claimed)

        if self._mutate(_claim) is None:
            return []
        if len(claimed) < len(record_ids):
            logger.debug(
                f"Dropped {len(record_ids) - len(claimed)} already-processed record(s) "
                f"for {self.session_id[:8]}"
            )
        return claimed

    def commit(
        self,
        deltas: list[MetricDelta],
        delta_log: DeltaLog,
        last_line: int | None = None,
        attached_prompts: list[str] | None = None,
    ) -> list[MetricDelta]:
        """Persist an extraction pass.

        Deltas are appended to the delta log first (idempotent by record
        id), then claimed. A crash between the two leaves the deltas logged
        but unclaimed; the next pass re-extracts them, the log append skips
        them and the claim completes, so nothing is lost or duplicated.

        Returns:
            Deltas newly claimed by this call.
        """
        known = self.processed_ids()
        candidates = [d for d in deltas if d.record_id not in known]
        delta_log.append(candidates)
        claimed = set(self.claim([d.record_id for d in candidates]))

        prompts = list(attached_prompts or [])

        def _progress(state: SyncState) -> None:
            if last_line is not None:
                state.last_processed_line = max(state.last_processed_line, last_line)
            state.last_processed_timestamp = time.time()
            _extend_unique(state.attached_user_prompt_texts, prompts)

        self._mutate(_progress)
        return [d for d in candidates if d.record_id in claimed]

    def add_attached_prompts(self, texts: list[str]) -> None:
        def _add(state: SyncState) -> None:
            _extend_unique(state.attached_user_prompt_texts, texts)

        self._mutate(_add)

    def update_last_processed(self, line: int, timestamp: float | None = None) -> None:
        def _update(state: SyncState) -> None:
            state.last_processed_line = line
            state.last_processed_timestamp = timestamp if timestamp is not None else time.time()

        self._mutate(_update)

    def mark_synced(self, record_ids: list[str]) -> None:
        if not record_ids:
            return

        def _synced(state: SyncState) -> None:
            state.last_synced_record_id = record_ids[-1]
            state.last_sync_at = time.time()
            state.last_sync_error = None
            state.total_synced += len(record_ids)

        self._mutate(_synced)
        logger.debug(f"Marked {len(record_ids)} records synced for {self.session_id[:8]}")

    def mark_failed(self, record_ids: list[str], error: str) -> None:
        if not record_ids:
            return

        def _failed(state: SyncState) -> None:
            state.total_failed += len(record_ids)
            state.last_sync_error = error

        self._mutate(_failed)

    def update_status(self, status: SessionStatus, end_time: float | None = None) -> None:
        def _status(state: SyncState) -> None:
            state.status = status
            if end_time is not None and status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
                state.session_end_time = end_time

        self._mutate(_status)
